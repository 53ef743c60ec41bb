"""ICS serialization of events and busy windows, and a tolerant busy-window parser.

Serialization builds an ``icalendar.Calendar`` with one VEVENT per event and
one VFREEBUSY per availability window. Parsing is a line scanner over
BEGIN:VEVENT/END:VEVENT blocks that reads only DTSTART, DTEND and SUMMARY, so
third-party feeds with odd parameters or missing ``Z`` suffixes still yield
usable windows.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Optional

from icalendar import Calendar, Event, FreeBusy
from icalendar.prop import vRecur

from ..core.config_manager import DEFAULT_PRODID
from ..core.exceptions import IcsParseError, IcsParseSkip
from ..core.timezone_utils import epoch_millis, now_utc, try_parse_instant
from ..models import BusyWindow, CalendarEvent
from ..recurrence.rule_codec import summarize_rule

logger = logging.getLogger(__name__)

UID_DOMAIN = "calendar-engine"

_ESCAPES = (("\\", "\\\\"), (";", "\\;"), (",", "\\,"), ("\n", "\\n"))


def escape_text(value: str) -> str:
    """Escape backslash, semicolon, comma and newline per RFC 5545 TEXT rules."""
    text = value.replace("\r\n", "\n").replace("\r", "\n")
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return text


def unescape_text(value: str) -> str:
    """Reverse :func:`escape_text`; unknown escapes keep the escaped character."""
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None:
            out.append("\\")
        elif nxt in ("n", "N"):
            out.append("\n")
        else:
            out.append(nxt)
    return "".join(out)


def split_content_line(line: str) -> tuple[str, str]:
    """Split a content line into its upper-cased name and its raw value.

    The value starts after the first colon outside a quoted parameter value
    and is returned still escaped.

    Raises:
        ValueError: If the line has no name/value separator
    """
    quoted = False
    for index, ch in enumerate(line):
        if ch == '"':
            quoted = not quoted
        elif ch == ":" and not quoted:
            name = line[:index].split(";", 1)[0].strip()
            if not name:
                break
            return name.upper(), line[index + 1 :]
    raise ValueError(f"Not a content line: {line!r}")


def unfold_lines(text: str) -> list[str]:
    """Split ICS text into logical lines, joining folded continuations."""
    lines: list[str] = []
    for raw_line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw_line.startswith((" ", "\t")) and lines:
            lines[-1] += raw_line[1:]
        else:
            lines.append(raw_line)
    return [line for line in lines if line.strip()]


class IcsCodec:
    """Builds ICS documents and extracts busy windows from them."""

    def __init__(self, prodid: str = DEFAULT_PRODID, time_provider: Callable[[], datetime.datetime] = now_utc):
        self.prodid = prodid
        self.time_provider = time_provider

    def serialize(
        self,
        events: Iterable[CalendarEvent],
        availability: Optional[Iterable[BusyWindow]] = None,
        calendar_name: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> str:
        """Serialize events and optional busy windows into one ICS document.

        Args:
            events: Events and/or expanded occurrences
            availability: Busy windows emitted as VFREEBUSY blocks
            calendar_name: Optional X-WR-CALNAME
            timezone: Optional X-WR-TIMEZONE

        Returns:
            ICS text with CRLF line endings
        """
        stamp = self.time_provider()

        cal = Calendar()
        cal.add("prodid", self.prodid)
        cal.add("version", "2.0")
        cal.add("calscale", "GREGORIAN")
        if calendar_name:
            cal.add("x-wr-calname", calendar_name)
        if timezone:
            cal.add("x-wr-timezone", timezone)

        for event in events:
            cal.add_component(self._build_event(event, stamp))

        for index, window in enumerate(availability or ()):
            cal.add_component(self._build_freebusy(window, index, stamp))

        return cal.to_ical().decode("utf-8")

    def _build_event(self, event: CalendarEvent, stamp: datetime.datetime) -> Event:
        component = Event()
        component.add("dtstamp", stamp)
        if event.occurrence_id is not None:
            # Occurrences are instances of their template's series
            component.add("uid", f"{event.occurrence_id.template_id}@{UID_DOMAIN}")
        else:
            component.add("uid", f"{event.event_key}@{UID_DOMAIN}")

        if event.is_all_day:
            start_date = event.starts_at.date()
            end_date = start_date
            if event.ends_at is not None:
                end_date = event.ends_at.date()
                if event.ends_at.time() != datetime.time(0):
                    end_date += datetime.timedelta(days=1)
            # DTEND is exclusive for date values
            if end_date <= start_date:
                end_date = start_date + datetime.timedelta(days=1)
            component.add("dtstart", start_date)
            component.add("dtend", end_date)
            if event.occurrence_id is not None:
                component.add("recurrence-id", start_date)
        else:
            component.add("dtstart", event.starts_at)
            if event.ends_at is not None:
                component.add("dtend", event.ends_at)
            if event.occurrence_id is not None:
                component.add("recurrence-id", event.starts_at)
        component.add("summary", event.title)

        description = event.description or ""
        if event.is_template and event.recurrence is not None:
            recurrence_summary = event.recurrence.summary or summarize_rule(event.recurrence.rule)
            note = f"Recurrence: {recurrence_summary}"
            description = f"{description}\n\n{note}" if description else note
        if description:
            component.add("description", description)

        if event.location:
            component.add("location", event.location)
        if event.video_conference_link:
            component.add("url", event.video_conference_link)

        if event.is_template and event.recurrence is not None:
            try:
                component.add("rrule", vRecur.from_ical(event.recurrence.rule))
            except ValueError:
                logger.warning("Not exporting malformed RRULE %r for event %s", event.recurrence.rule, event.id)

        component.add("status", "CONFIRMED")
        return component

    def _build_freebusy(self, window: BusyWindow, index: int, stamp: datetime.datetime) -> FreeBusy:
        component = FreeBusy()
        component.add("uid", f"busy-{index}-{epoch_millis(window.start)}@{UID_DOMAIN}")
        component.add("dtstamp", stamp)
        if window.provider:
            component.add("x-busy-provider", window.provider)
        if window.title:
            component.add("x-busy-summary", window.title)
        component.add("freebusy", (window.start, window.end), parameters={"FBTYPE": "BUSY"})
        return component

    def parse_busy_windows(self, text: Any) -> list[dict[str, Any]]:
        """Extract ``{start, end, title}`` from every usable VEVENT block.

        Args:
            text: ICS document

        Returns:
            Windows in document order; blocks lacking DTSTART or DTEND are dropped

        Raises:
            IcsParseError: If the document has no VCALENDAR or unbalanced VEVENTs
        """
        if not isinstance(text, str):
            raise IcsParseError("ICS content must be text")

        lines = unfold_lines(text)
        if not any(line.strip().upper() == "BEGIN:VCALENDAR" for line in lines):
            raise IcsParseError("Missing BEGIN:VCALENDAR")

        windows: list[dict[str, Any]] = []
        skipped = 0
        for block in self._iter_event_blocks(lines):
            try:
                windows.append(self._parse_event_block(block))
            except IcsParseSkip as e:
                skipped += 1
                logger.debug("Dropping VEVENT: %s", e)

        if skipped:
            logger.debug("Parsed %d busy windows (%d VEVENT blocks dropped)", len(windows), skipped)
        return windows

    def _iter_event_blocks(self, lines: list[str]) -> Iterator[list[str]]:
        block: Optional[list[str]] = None
        for raw_line in lines:
            line = raw_line.strip()
            marker = line.upper()
            if marker == "BEGIN:VEVENT":
                if block is not None:
                    raise IcsParseError("Nested BEGIN:VEVENT")
                block = []
            elif marker == "END:VEVENT":
                if block is None:
                    raise IcsParseError("END:VEVENT without BEGIN:VEVENT")
                yield block
                block = None
            elif block is not None:
                block.append(line)

        if block is not None:
            raise IcsParseError("Unterminated VEVENT")

    def _parse_event_block(self, block: list[str]) -> dict[str, Any]:
        values: dict[str, str] = {}
        for line in block:
            try:
                name, value = split_content_line(line)
            except ValueError:
                continue
            if name in ("DTSTART", "DTEND", "SUMMARY") and name not in values:
                values[name] = value

        start = try_parse_instant(values.get("DTSTART"))
        end = try_parse_instant(values.get("DTEND"))
        if start is None or end is None:
            raise IcsParseSkip("VEVENT without usable DTSTART/DTEND")

        summary = values.get("SUMMARY")
        return {
            "start": start,
            "end": end,
            "title": unescape_text(summary) if summary else None,
        }
