"""Unit tests for calendar_engine.recurrence.rule_codec."""

from datetime import datetime, timezone

import pytest

from calendar_engine.core.exceptions import InvalidRecurrence, ValidationFailure
from calendar_engine.recurrence.rule_codec import (
    DecodedRule,
    RecurrenceRuleCodec,
    decode_rule,
    encode_recurrence,
    summarize_rule,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def codec() -> RecurrenceRuleCodec:
    return RecurrenceRuleCodec()


class TestEncode:
    def test_weekly_with_days_and_count(self, codec):
        encoded = codec.encode({"frequency": "weekly", "byWeekday": ["we", "MO", "MO"], "count": 4})

        assert encoded.rule == "FREQ=WEEKLY;COUNT=4;BYDAY=MO,WE"
        assert encoded.count == 4
        assert encoded.until is None
        assert encoded.summary == "every week on MO, WE for 4 occurrences"

    def test_interval_only_emitted_when_greater_than_one(self, codec):
        assert codec.encode({"frequency": "DAILY", "interval": 1}).rule == "FREQ=DAILY"
        assert codec.encode({"frequency": "DAILY", "interval": "3"}).rule == "FREQ=DAILY;INTERVAL=3"

    def test_until_is_utc_stamp_truncated_to_seconds(self, codec):
        encoded = codec.encode({"frequency": "MONTHLY", "until": "2025-03-01T10:30:15.750+02:00"})

        assert encoded.rule == "FREQ=MONTHLY;UNTIL=20250301T083015Z"
        assert encoded.until == datetime(2025, 3, 1, 8, 30, 15, tzinfo=timezone.utc)
        assert encoded.summary == "every month until 2025-03-01"

    def test_to_spec_carries_bounds(self, codec):
        spec = codec.encode({"frequency": "DAILY", "count": 2}).to_spec()

        assert spec.rule == "FREQ=DAILY;COUNT=2"
        assert spec.count == 2
        assert spec.summary == "every day for 2 occurrences"

    @pytest.mark.parametrize(
        "request_body,field",
        [
            ({"frequency": "YEARLY"}, "frequency"),
            ({}, "frequency"),
            ({"frequency": "DAILY", "interval": 0}, "interval"),
            ({"frequency": "DAILY", "interval": "two"}, "interval"),
            ({"frequency": "DAILY", "count": -1}, "count"),
            ({"frequency": "DAILY", "count": True}, "count"),
            ({"frequency": "DAILY", "count": 521}, "count"),
            ({"frequency": "WEEKLY", "byWeekday": ["XX", "funday"]}, "byWeekday"),
            ({"frequency": "WEEKLY", "byWeekday": 5}, "byWeekday"),
            ({"frequency": "DAILY", "until": "not a date"}, "until"),
        ],
    )
    def test_invalid_requests_name_the_field(self, codec, request_body, field):
        with pytest.raises(InvalidRecurrence) as exc_info:
            codec.encode(request_body)

        assert exc_info.value.field == field
        assert isinstance(exc_info.value, ValidationFailure)

    def test_empty_weekday_list_is_allowed(self, codec):
        assert codec.encode({"frequency": "WEEKLY", "byWeekday": []}).rule == "FREQ=WEEKLY"

    def test_non_mapping_request_rejected(self, codec):
        with pytest.raises(InvalidRecurrence):
            codec.encode("FREQ=DAILY")  # type: ignore[arg-type]


class TestDecode:
    def test_decode_full_rule(self, codec):
        decoded = codec.decode("FREQ=WEEKLY;INTERVAL=2;BYDAY=WE,MO;COUNT=6;UNTIL=20250301T000000Z")

        assert decoded == DecodedRule(
            frequency="WEEKLY",
            interval=2,
            by_weekday=("MO", "WE"),
            count=6,
            until=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )
        assert decoded.is_supported

    def test_decode_is_lenient(self, codec):
        decoded = codec.decode("RRULE:freq=daily;INTERVAL=;COUNT=abc;WKST=MO;garbage;UNTIL=bogus")

        assert decoded.frequency == "DAILY"
        assert decoded.interval == 1
        assert decoded.count is None
        assert decoded.until is None

    def test_unsupported_frequency_is_not_supported(self, codec):
        decoded = codec.decode("FREQ=YEARLY;BYMONTH=3")

        assert decoded.frequency == "YEARLY"
        assert not decoded.is_supported
        assert codec.summarize(decoded) == "custom recurrence"

    def test_decode_empty(self, codec):
        assert codec.decode(None).frequency is None
        assert codec.encode_decoded(codec.decode("")) == ""

    @pytest.mark.parametrize("frequency", ["DAILY", "WEEKLY", "MONTHLY"])
    @pytest.mark.parametrize("interval", [1, 3])
    @pytest.mark.parametrize(
        "weekdays,expected_days",
        [
            ([], ()),
            (["TH"], ("TH",)),
            (["MO", "WE", "FR"], ("MO", "WE", "FR")),
            (["SA", "MO", "SU"], ("SU", "MO", "SA")),
            (["TU", "TU", "tu"], ("TU",)),
            (["fr", "mo"], ("MO", "FR")),
        ],
    )
    @pytest.mark.parametrize(
        "bounds",
        [{}, {"count": 5}, {"until": "2025-06-30T12:00:00Z"}, {"count": 5, "until": "2025-06-30T12:00:00Z"}],
    )
    def test_encode_decode_is_idempotent(self, codec, frequency, interval, weekdays, expected_days, bounds):
        encoded = codec.encode({"frequency": frequency, "interval": interval, "byWeekday": weekdays, **bounds})

        decoded = codec.decode(encoded.rule)

        assert codec.encode_decoded(decoded) == encoded.rule
        assert decoded == DecodedRule(
            frequency=frequency,
            interval=interval,
            by_weekday=expected_days,
            count=bounds.get("count"),
            until=datetime(2025, 6, 30, 12, tzinfo=timezone.utc) if "until" in bounds else None,
        )
        assert codec.decode(codec.encode_decoded(decoded)) == decoded


class TestModuleHelpers:
    def test_shared_codec_helpers(self):
        rule = encode_recurrence({"frequency": "DAILY", "interval": 2}).rule

        assert rule == "FREQ=DAILY;INTERVAL=2"
        assert decode_rule(rule).interval == 2
        assert summarize_rule(rule) == "every 2 days"

    def test_summary_singular_count(self):
        assert summarize_rule("FREQ=MONTHLY;COUNT=1") == "every month for 1 occurrence"
