"""Unit tests for calendar_engine.ics.codec."""

from datetime import datetime, timezone

import pytest

from calendar_engine.core.exceptions import IcsParseError
from calendar_engine.ics.codec import IcsCodec, escape_text, split_content_line, unescape_text, unfold_lines
from calendar_engine.models import BusyWindow, CalendarEvent
from calendar_engine.recurrence.expander import ExpansionWindow, RecurrenceExpander

pytestmark = pytest.mark.unit


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def codec(fixed_now) -> IcsCodec:
    return IcsCodec(time_provider=fixed_now)


def _unfolded(body: str) -> str:
    return "\n".join(unfold_lines(body))


class TestTextEscaping:
    def test_escape_special_characters(self):
        assert escape_text("a\\b;c,d\ne") == "a\\\\b\\;c\\,d\\ne"

    def test_escape_normalizes_crlf(self):
        assert escape_text("one\r\ntwo") == "one\\ntwo"

    @pytest.mark.parametrize(
        "raw",
        ["plain", "comma, semicolon; backslash \\ end", "line one\nline two", "trailing\\"],
    )
    def test_unescape_reverses_escape(self, raw):
        assert unescape_text(escape_text(raw)) == raw

    def test_unescape_uppercase_newline_and_dangling_backslash(self):
        assert unescape_text("a\\Nb") == "a\nb"
        assert unescape_text("end\\") == "end\\"

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("summary:Lunch", ("SUMMARY", "Lunch")),
            ("DTSTART;TZID=Europe/London:20250106T100000", ("DTSTART", "20250106T100000")),
            ('DTSTART;X-NOTE="a:b";VALUE=DATE-TIME:20250106T100000Z', ("DTSTART", "20250106T100000Z")),
            ("SUMMARY:Call at 10:30\\, room B", ("SUMMARY", "Call at 10:30\\, room B")),
        ],
    )
    def test_split_content_line_keeps_value_escaped(self, line, expected):
        assert split_content_line(line) == expected

    @pytest.mark.parametrize("line", ["no separator", ":orphan value"])
    def test_split_content_line_rejects_malformed_lines(self, line):
        with pytest.raises(ValueError):
            split_content_line(line)

    def test_unfold_joins_continuations(self):
        assert unfold_lines("SUMMARY:Long\r\n  title\r\n\t continued\r\n\r\nEND:VEVENT") == [
            "SUMMARY:Long title continued",
            "END:VEVENT",
        ]


class TestSerialize:
    def test_calendar_header(self, codec):
        body = codec.serialize([], calendar_name="Team", timezone="Europe/London")

        assert body.startswith("BEGIN:VCALENDAR\r\n")
        assert "VERSION:2.0" in body
        assert "PRODID:-//Calendar Engine//Schedule Export//EN" in body
        assert "CALSCALE:GREGORIAN" in body
        assert "X-WR-CALNAME:Team" in body
        assert "X-WR-TIMEZONE:Europe/London" in body
        assert body.rstrip().endswith("END:VCALENDAR")

    def test_single_event(self, codec):
        event = CalendarEvent(
            id="5",
            title="Design review",
            starts_at=_utc(2025, 1, 6, 9),
            ends_at=_utc(2025, 1, 6, 10, 30),
            location="Room 4",
            video_conference_link="https://meet.example.com/abc",
            description="Bring mocks",
        )

        body = _unfolded(codec.serialize([event]))

        assert "UID:5@calendar-engine" in body
        assert "DTSTAMP:20250101T000000Z" in body
        assert "DTSTART:20250106T090000Z" in body
        assert "DTEND:20250106T103000Z" in body
        assert "SUMMARY:Design review" in body
        assert "DESCRIPTION:Bring mocks" in body
        assert "LOCATION:Room 4" in body
        assert "URL:https://meet.example.com/abc" in body
        assert "STATUS:CONFIRMED" in body
        assert "RRULE" not in body

    def test_template_gets_rrule_and_recurrence_note(self, codec, make_template):
        template = make_template("FREQ=WEEKLY;COUNT=4;BYDAY=MO,WE", _utc(2025, 1, 6, 9))

        body = _unfolded(codec.serialize([template]))

        assert "RRULE:FREQ=WEEKLY" in body
        assert "BYDAY=MO,WE" in body
        assert "COUNT=4" in body
        assert "DESCRIPTION:Recurrence: every week on MO\\, WE for 4 occurrences" in body

    def test_occurrences_share_template_uid_with_recurrence_id(self, codec, make_template):
        template = make_template("FREQ=DAILY;COUNT=2", _utc(2025, 1, 6, 9))
        occurrences = RecurrenceExpander().expand(
            template, ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2025, 2, 1))
        )

        body = _unfolded(codec.serialize([template, *occurrences]))

        uids = {line for line in body.split("\n") if line.startswith("UID:")}
        assert uids == {"UID:tpl-1@calendar-engine"}
        assert body.count("BEGIN:VEVENT") == 3
        assert body.count("RECURRENCE-ID") == 2
        assert "RECURRENCE-ID:20250107T090000Z" in body
        assert "RECURRENCE-ID:20250108T090000Z" in body
        assert body.count("RRULE") == 1

    def test_all_day_event_uses_date_values(self, codec):
        event = CalendarEvent(
            id="11",
            title="Offsite",
            starts_at=_utc(2025, 1, 9),
            ends_at=_utc(2025, 1, 10, 23, 59),
            is_all_day=True,
        )

        body = _unfolded(codec.serialize([event]))

        assert "DTSTART;VALUE=DATE:20250109" in body
        assert "DTEND;VALUE=DATE:20250111" in body

    def test_all_day_event_without_end_spans_one_day(self, codec):
        event = CalendarEvent(id="12", title="Holiday", starts_at=_utc(2025, 1, 9), is_all_day=True)

        body = _unfolded(codec.serialize([event]))

        assert "DTSTART;VALUE=DATE:20250109" in body
        assert "DTEND;VALUE=DATE:20250110" in body

    def test_free_text_is_escaped(self, codec):
        event = CalendarEvent(
            id="9", title="Sync, plan; review", starts_at=_utc(2025, 1, 6, 9), location="A\\B"
        )

        body = _unfolded(codec.serialize([event]))

        assert "SUMMARY:Sync\\, plan\\; review" in body
        assert "LOCATION:A\\\\B" in body

    def test_availability_as_vfreebusy(self, codec):
        busy = BusyWindow(provider="google", start=_utc(2025, 1, 6, 10), end=_utc(2025, 1, 6, 11), title="Busy")

        body = _unfolded(codec.serialize([], availability=[busy]))

        assert "BEGIN:VFREEBUSY" in body
        assert "UID:busy-0-1736157600000@calendar-engine" in body
        assert "X-BUSY-PROVIDER:google" in body
        assert "X-BUSY-SUMMARY:Busy" in body
        assert "FBTYPE=BUSY" in body
        assert "20250106T100000Z/20250106T110000Z" in body


class TestParseBusyWindows:
    def test_parses_blocks_and_drops_incomplete_ones(self, codec, sample_busy_ics):
        windows = codec.parse_busy_windows(sample_busy_ics)

        assert windows == [
            {"start": _utc(2025, 1, 6, 10), "end": _utc(2025, 1, 6, 11), "title": "Client call"},
            {"start": _utc(2025, 1, 6, 14), "end": _utc(2025, 1, 6, 15), "title": "Dentist, downtown"},
        ]

    def test_date_only_values(self, codec):
        text = (
            "BEGIN:VCALENDAR\n"
            "BEGIN:VEVENT\n"
            "DTSTART;VALUE=DATE:20250107\n"
            "DTEND;VALUE=DATE:20250108\n"
            "END:VEVENT\n"
            "END:VCALENDAR\n"
        )

        assert codec.parse_busy_windows(text) == [
            {"start": _utc(2025, 1, 7), "end": _utc(2025, 1, 8), "title": None}
        ]

    def test_round_trip_preserves_times_and_titles(self, codec):
        events = [
            CalendarEvent(id="1", title="Plain", starts_at=_utc(2025, 1, 6, 9), ends_at=_utc(2025, 1, 6, 10)),
            CalendarEvent(
                id="2",
                title="Commas, semis; and \\ slashes",
                starts_at=_utc(2025, 1, 7, 13, 15),
                ends_at=_utc(2025, 1, 7, 14),
            ),
            CalendarEvent(
                id="3",
                title="A deliberately long title that will certainly be folded by the serializer output",
                starts_at=_utc(2025, 1, 8, 8),
                ends_at=_utc(2025, 1, 8, 8, 30),
            ),
        ]

        parsed = codec.parse_busy_windows(codec.serialize(events))

        assert [(w["start"], w["end"], w["title"]) for w in parsed] == [
            (e.starts_at, e.ends_at, e.title) for e in events
        ]

    def test_escaped_text_is_unescaped_exactly_once(self, codec):
        text = (
            "BEGIN:VCALENDAR\n"
            "BEGIN:VEVENT\n"
            'DTSTART;X-NOTE="a:b":20250106T100000Z\n'
            "DTEND:20250106T110000Z\n"
            "SUMMARY:C:\\\\new\\\\notes\\, draft\\nsecond line\n"
            "END:VEVENT\n"
            "END:VCALENDAR\n"
        )

        (window,) = codec.parse_busy_windows(text)

        assert window["start"] == _utc(2025, 1, 6, 10)
        assert window["title"] == "C:\\new\\notes, draft\nsecond line"

    def test_round_trip_keeps_literal_backslash_n(self, codec):
        event = CalendarEvent(
            id="4", title="Share \\new folder", starts_at=_utc(2025, 1, 6, 9), ends_at=_utc(2025, 1, 6, 10)
        )

        (window,) = codec.parse_busy_windows(codec.serialize([event]))

        assert window["title"] == "Share \\new folder"

    @pytest.mark.parametrize(
        "text,message",
        [
            ("BEGIN:VEVENT\nDTSTART:20250106T100000Z\nEND:VEVENT\n", "Missing BEGIN:VCALENDAR"),
            (
                "BEGIN:VCALENDAR\nBEGIN:VEVENT\nBEGIN:VEVENT\nEND:VEVENT\nEND:VCALENDAR\n",
                "Nested BEGIN:VEVENT",
            ),
            ("BEGIN:VCALENDAR\nEND:VEVENT\nEND:VCALENDAR\n", "END:VEVENT without BEGIN:VEVENT"),
            ("BEGIN:VCALENDAR\nBEGIN:VEVENT\nDTSTART:20250106T100000Z\n", "Unterminated VEVENT"),
        ],
    )
    def test_structural_errors(self, codec, text, message):
        with pytest.raises(IcsParseError, match=message):
            codec.parse_busy_windows(text)

    def test_non_text_input(self, codec):
        with pytest.raises(IcsParseError):
            codec.parse_busy_windows(b"BEGIN:VCALENDAR")

    def test_unparseable_dates_drop_the_block(self, codec):
        text = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nDTSTART:tomorrow\nDTEND:20250106T100000Z\nEND:VEVENT\nEND:VCALENDAR"

        assert codec.parse_busy_windows(text) == []
