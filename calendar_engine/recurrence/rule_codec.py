"""Encode and decode the RRULE subset used by calendar templates.

Supported keys are FREQ (DAILY, WEEKLY, MONTHLY), INTERVAL, COUNT, BYDAY and
UNTIL. The encoder is strict and produces a canonical string with the keys in
a fixed order; the decoder is lenient and ignores anything it does not know.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from ..core.exceptions import InvalidRecurrence
from ..core.timezone_utils import format_ics_stamp, parse_instant, try_parse_instant
from ..models import RecurrenceSpec

logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")

# Day-of-week order used for BYDAY output and weekly blocks (Sunday first)
WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

MAX_COUNT = 520

_UNIT_NAMES = {"DAILY": "day", "WEEKLY": "week", "MONTHLY": "month"}


@dataclass(frozen=True)
class DecodedRule:
    """Structured view of a rule string."""

    frequency: Optional[str]
    interval: int = 1
    by_weekday: tuple[str, ...] = ()
    count: Optional[int] = None
    until: Optional[datetime.datetime] = None

    @property
    def is_supported(self) -> bool:
        return self.frequency in SUPPORTED_FREQUENCIES


@dataclass(frozen=True)
class EncodedRecurrence:
    """Result of encoding a recurrence request."""

    rule: str
    until: Optional[datetime.datetime]
    count: Optional[int]
    summary: str

    def to_spec(self) -> RecurrenceSpec:
        return RecurrenceSpec(rule=self.rule, until=self.until, count=self.count, summary=self.summary)


def _first_present(request: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in request and request[key] is not None:
            return request[key]
    return None


def _positive_int(value: Any, field: str) -> int:
    """Coerce a request value to a positive integer or raise InvalidRecurrence."""
    if isinstance(value, bool):
        raise InvalidRecurrence(field, f"{field} must be a positive integer.")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise InvalidRecurrence(field, f"{field} must be a positive integer.")
    if number < 1:
        raise InvalidRecurrence(field, f"{field} must be a positive integer.")
    return number


def _normalize_weekdays(codes: Any) -> tuple[str, ...]:
    """Keep valid two-letter codes, deduplicated, in SU..SA order."""
    if isinstance(codes, str):
        codes = codes.split(",")
    wanted = {str(code).strip().upper() for code in codes if code is not None}
    return tuple(code for code in WEEKDAY_CODES if code in wanted)


def _build_rule(
    frequency: str,
    interval: int,
    count: Optional[int],
    by_weekday: tuple[str, ...],
    until: Optional[datetime.datetime],
) -> str:
    parts = [f"FREQ={frequency}"]
    if interval > 1:
        parts.append(f"INTERVAL={interval}")
    if count:
        parts.append(f"COUNT={count}")
    if by_weekday:
        parts.append("BYDAY=" + ",".join(by_weekday))
    if until is not None:
        parts.append(f"UNTIL={format_ics_stamp(until)}")
    return ";".join(parts)


class RecurrenceRuleCodec:
    """Validates recurrence requests and converts between rule strings and DecodedRule."""

    def encode(self, request: Mapping[str, Any]) -> EncodedRecurrence:
        """Validate a recurrence request and produce the canonical rule.

        Args:
            request: Mapping with ``frequency`` and optional ``interval``,
                ``byWeekday``, ``until`` and ``count`` (snake_case accepted)

        Returns:
            EncodedRecurrence with rule string, bounds and summary

        Raises:
            InvalidRecurrence: If any field is malformed
        """
        if not isinstance(request, Mapping):
            raise InvalidRecurrence("recurrence", "recurrence must be an object.")

        raw_frequency = request.get("frequency")
        frequency = raw_frequency.strip().upper() if isinstance(raw_frequency, str) else None
        if frequency not in SUPPORTED_FREQUENCIES:
            raise InvalidRecurrence("frequency", "frequency must be one of DAILY, WEEKLY, MONTHLY.")

        raw_interval = request.get("interval")
        interval = 1 if raw_interval in (None, "") else _positive_int(raw_interval, "interval")

        raw_weekdays = _first_present(request, "byWeekday", "by_weekday")
        by_weekday: tuple[str, ...] = ()
        if raw_weekdays is not None:
            if not isinstance(raw_weekdays, (list, tuple, str)):
                raise InvalidRecurrence("byWeekday", "byWeekday must be a list of weekday codes.")
            by_weekday = _normalize_weekdays(raw_weekdays)
            if len(raw_weekdays) > 0 and not by_weekday:
                raise InvalidRecurrence("byWeekday", "byWeekday must contain at least one of SU, MO, TU, WE, TH, FR, SA.")

        count: Optional[int] = None
        raw_count = request.get("count")
        if raw_count not in (None, ""):
            count = _positive_int(raw_count, "count")
            if count > MAX_COUNT:
                raise InvalidRecurrence("count", f"count must not exceed {MAX_COUNT}.")

        until: Optional[datetime.datetime] = None
        raw_until = request.get("until")
        if raw_until not in (None, ""):
            try:
                until = parse_instant(raw_until).replace(microsecond=0)
            except ValueError as e:
                raise InvalidRecurrence("until", "until must be a valid date/time.") from e

        rule = _build_rule(frequency, interval, count, by_weekday, until)
        decoded = DecodedRule(frequency, interval, by_weekday, count, until)
        return EncodedRecurrence(rule=rule, until=until, count=count, summary=self.summarize(decoded))

    def decode(self, rule: Optional[str]) -> DecodedRule:
        """Parse a rule string leniently.

        Unknown keys, empty values and pairs without ``=`` are ignored; an
        ``RRULE:`` prefix is accepted.
        """
        frequency: Optional[str] = None
        interval = 1
        by_weekday: tuple[str, ...] = ()
        count: Optional[int] = None
        until: Optional[datetime.datetime] = None

        text = (rule or "").strip()
        if text.upper().startswith("RRULE:"):
            text = text[len("RRULE:") :]

        for part in text.split(";"):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            key = key.strip().upper()
            value = value.strip()
            if not value:
                continue

            if key == "FREQ":
                frequency = value.upper()
            elif key == "INTERVAL":
                if value.isdigit() and int(value) > 0:
                    interval = int(value)
            elif key == "COUNT":
                if value.isdigit() and int(value) > 0:
                    count = int(value)
            elif key == "BYDAY":
                by_weekday = _normalize_weekdays(value)
            elif key == "UNTIL":
                until = try_parse_instant(value)
                if until is None:
                    logger.debug("Ignoring unparseable UNTIL value %r", value)

        return DecodedRule(frequency, interval, by_weekday, count, until)

    def encode_decoded(self, decoded: DecodedRule) -> str:
        """Re-emit the canonical rule string for a decoded rule."""
        if not decoded.frequency:
            return ""
        return _build_rule(decoded.frequency, decoded.interval, decoded.count, decoded.by_weekday, decoded.until)

    def summarize(self, decoded: DecodedRule) -> str:
        """Render a short human-readable description, e.g. "every 2 weeks on MO, WE"."""
        unit = _UNIT_NAMES.get(decoded.frequency or "")
        if unit is None:
            return "custom recurrence"

        summary = f"every {unit}" if decoded.interval == 1 else f"every {decoded.interval} {unit}s"
        if decoded.by_weekday:
            summary += " on " + ", ".join(decoded.by_weekday)
        if decoded.count:
            noun = "occurrence" if decoded.count == 1 else "occurrences"
            summary += f" for {decoded.count} {noun}"
        if decoded.until is not None:
            summary += f" until {decoded.until.date().isoformat()}"
        return summary


_codec = RecurrenceRuleCodec()


def encode_recurrence(request: Mapping[str, Any]) -> EncodedRecurrence:
    """Encode with the shared codec (convenience function)."""
    return _codec.encode(request)


def decode_rule(rule: Optional[str]) -> DecodedRule:
    """Decode with the shared codec (convenience function)."""
    return _codec.decode(rule)


def summarize_rule(rule: Optional[str]) -> str:
    """Summarize a rule string with the shared codec."""
    return _codec.summarize(_codec.decode(rule))
