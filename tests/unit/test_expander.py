"""Unit tests for calendar_engine.recurrence.expander."""

from datetime import datetime, timedelta, timezone

import pytest

from calendar_engine.core.config_manager import EngineConfig
from calendar_engine.models import CalendarEvent, OccurrenceId, RecurrenceSpec
from calendar_engine.recurrence.expander import ExpansionWindow, RecurrenceExpander

pytestmark = pytest.mark.unit


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def expander(fixed_now) -> RecurrenceExpander:
    return RecurrenceExpander(time_provider=fixed_now)


@pytest.fixture
def q1_window() -> ExpansionWindow:
    return ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2025, 3, 31, 23, 59))


class TestWeekly:
    def test_weekly_by_day_with_count(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4", _utc(2025, 1, 6, 9))

        occurrences = expander.expand(template, q1_window)

        assert [o.starts_at for o in occurrences] == [
            _utc(2025, 1, 8, 9),
            _utc(2025, 1, 13, 9),
            _utc(2025, 1, 15, 9),
            _utc(2025, 1, 20, 9),
        ]
        assert all(o.ends_at - o.starts_at == timedelta(hours=1) for o in occurrences)

    def test_weekly_without_by_day_uses_template_weekday(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;COUNT=3", _utc(2025, 1, 9, 15))  # Thursday

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 16, 15), _utc(2025, 1, 23, 15), _utc(2025, 1, 30, 15)]

    def test_weekly_interval_skips_weeks(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;INTERVAL=2;BYDAY=TU;COUNT=3", _utc(2025, 1, 7, 8))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 21, 8), _utc(2025, 2, 4, 8), _utc(2025, 2, 18, 8)]

    def test_weekly_days_before_base_in_first_week_are_skipped(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=SU,MO;COUNT=2", _utc(2025, 1, 8, 12))  # Wednesday

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 12, 12), _utc(2025, 1, 13, 12)]

    def test_biweekly_blocks_start_on_sunday(self, expander, make_template, q1_window):
        # Wednesday base; its block runs Sun 5th..Sat 11th so the next block is the 19th
        template = make_template("FREQ=WEEKLY;INTERVAL=2;BYDAY=SU,MO;COUNT=3", _utc(2025, 1, 8, 12))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 19, 12), _utc(2025, 1, 20, 12), _utc(2025, 2, 2, 12)]


class TestMonthlyAndDaily:
    def test_monthly_until_is_inclusive(self, expander, make_template, q1_window):
        base = _utc(2025, 1, 15, 10)
        template = make_template("FREQ=MONTHLY", base, until=_utc(2025, 2, 15, 10))

        occurrences = expander.expand(template, q1_window)

        assert len(occurrences) == 1
        assert occurrences[0].starts_at == _utc(2025, 2, 15, 10)

    def test_monthly_clamps_to_month_end_without_drift(self, expander, make_template):
        window = ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2025, 6, 1))
        template = make_template("FREQ=MONTHLY;COUNT=3", _utc(2025, 1, 31, 9))

        starts = [o.starts_at for o in expander.expand(template, window)]

        assert starts == [_utc(2025, 2, 28, 9), _utc(2025, 3, 31, 9), _utc(2025, 4, 30, 9)]

    def test_daily_interval(self, expander, make_template, q1_window):
        template = make_template("FREQ=DAILY;INTERVAL=3;COUNT=3", _utc(2025, 1, 1, 7))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 4, 7), _utc(2025, 1, 7, 7), _utc(2025, 1, 10, 7)]


class TestBounds:
    def test_occurrences_stay_inside_window(self, expander, make_template):
        window = ExpansionWindow(start=_utc(2025, 1, 10), end=_utc(2025, 1, 15))
        template = make_template("FREQ=DAILY", _utc(2025, 1, 1, 9))

        occurrences = expander.expand(template, window)

        assert [o.starts_at.day for o in occurrences] == [10, 11, 12, 13, 14]
        assert all(window.start <= o.starts_at <= window.end for o in occurrences)

    def test_count_counts_from_base_even_before_window(self, expander, make_template):
        # Occurrences on 2, 3 and 4 Jan fall before the window but still use up COUNT
        window = ExpansionWindow(start=_utc(2025, 1, 4), end=_utc(2025, 1, 31))
        template = make_template("FREQ=DAILY;COUNT=5", _utc(2025, 1, 1, 9))

        starts = [o.starts_at for o in expander.expand(template, window)]

        assert starts == [_utc(2025, 1, 4, 9), _utc(2025, 1, 5, 9), _utc(2025, 1, 6, 9)]

    def test_tighter_of_rule_and_stored_count_wins(self, expander, make_template, q1_window):
        template = make_template("FREQ=DAILY;COUNT=10", _utc(2025, 1, 1, 9), count=2)

        assert len(expander.expand(template, q1_window)) == 2

    def test_limit_caps_open_ended_rules(self, expander, make_template):
        window = ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2026, 1, 1), limit=5)
        template = make_template("FREQ=DAILY", _utc(2025, 1, 1, 9))

        assert len(expander.expand(template, window)) == 5

    def test_count_above_limit_is_honoured(self, expander, make_template):
        window = ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2026, 1, 1), limit=5)
        template = make_template("FREQ=WEEKLY;COUNT=8", _utc(2025, 1, 1, 9))

        assert len(expander.expand(template, window)) == 8


class TestLongRunningTemplates:
    """Templates that started long before the window still expand into it."""

    def test_weekly_template_from_2023(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=MO", _utc(2023, 1, 2, 9))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert len(starts) == 13
        assert starts[0] == _utc(2025, 1, 6, 9)
        assert starts[-1] == _utc(2025, 3, 31, 9)

    def test_biweekly_template_keeps_its_phase(self, expander, make_template, q1_window):
        # 2023-01-03 is a Tuesday; every other week lands on 2025-01-14
        template = make_template("FREQ=WEEKLY;INTERVAL=2;BYDAY=TU", _utc(2023, 1, 3, 8))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts[:2] == [_utc(2025, 1, 14, 8), _utc(2025, 1, 28, 8)]

    def test_daily_template_from_2022(self, expander, make_template):
        window = ExpansionWindow(start=_utc(2025, 1, 1), end=_utc(2025, 1, 3, 23))
        template = make_template("FREQ=DAILY", _utc(2022, 6, 1, 9))

        starts = [o.starts_at for o in expander.expand(template, window)]

        assert starts == [_utc(2025, 1, 1, 9), _utc(2025, 1, 2, 9), _utc(2025, 1, 3, 9)]

    def test_monthly_template_from_2019_still_clamps(self, expander, make_template, q1_window):
        template = make_template("FREQ=MONTHLY", _utc(2019, 1, 31, 9))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 31, 9), _utc(2025, 2, 28, 9), _utc(2025, 3, 31, 9)]

    def test_old_template_with_count_already_exhausted(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=MO;COUNT=10", _utc(2023, 1, 2, 9))

        assert expander.expand(template, q1_window) == []

    def test_old_template_with_until_inside_window(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=MO", _utc(2023, 1, 2, 9), until=_utc(2025, 1, 20, 9))

        starts = [o.starts_at for o in expander.expand(template, q1_window)]

        assert starts == [_utc(2025, 1, 6, 9), _utc(2025, 1, 13, 9), _utc(2025, 1, 20, 9)]


class TestOccurrenceShape:
    def test_occurrence_identity_and_template_untouched(self, expander, make_template, q1_window):
        template = make_template("FREQ=DAILY;COUNT=1", _utc(2025, 1, 1, 9), event_id="42")
        snapshot = template.model_dump()

        (occurrence,) = expander.expand(template, q1_window)

        assert occurrence.occurrence_id == OccurrenceId(template_id="42", occurrence_epoch_millis=1735808400000)
        assert occurrence.id is None
        assert occurrence.event_key == "42-occurrence-1735808400000"
        assert occurrence.recurring_instance is True
        assert occurrence.parent_event_id == "42"
        assert not occurrence.is_template
        assert occurrence.to_api_dict()["id"] == "42-occurrence-1735808400000"
        assert "occurrenceId" not in occurrence.to_api_dict()
        assert template.model_dump() == snapshot

    def test_expansion_is_deterministic(self, expander, make_template, q1_window):
        template = make_template("FREQ=WEEKLY;BYDAY=TU,TH", _utc(2025, 1, 7, 9))

        first = [o.to_api_dict() for o in expander.expand(template, q1_window)]
        second = [o.to_api_dict() for o in expander.expand(template, q1_window)]

        assert first == second

    @pytest.mark.parametrize("rule", ["FREQ=YEARLY", "FREQ=HOURLY;COUNT=3", "BYDAY=MO"])
    def test_unsupported_rules_expand_to_nothing(self, expander, make_template, q1_window, rule):
        assert expander.expand(make_template(rule, _utc(2025, 1, 6, 9)), q1_window) == []

    def test_non_recurring_event_expands_to_nothing(self, expander, q1_window):
        event = CalendarEvent(id="1", title="One-off", starts_at=_utc(2025, 1, 6, 9))

        assert expander.expand(event, q1_window) == []

    def test_template_without_id_is_skipped(self, expander, q1_window):
        event = CalendarEvent(
            title="Draft", starts_at=_utc(2025, 1, 6, 9), recurrence=RecurrenceSpec(rule="FREQ=DAILY")
        )

        assert expander.expand(event, q1_window) == []

    def test_event_without_end_yields_open_occurrences(self, expander, q1_window):
        event = CalendarEvent(
            id="7", title="Reminder", starts_at=_utc(2025, 1, 6, 9), recurrence=RecurrenceSpec(rule="FREQ=DAILY;COUNT=2")
        )

        assert [o.ends_at for o in expander.expand(event, q1_window)] == [None, None]


class TestDefaultWindow:
    def test_default_window_is_now_plus_months(self, expander):
        window = expander.default_window()

        assert window.start == _utc(2025, 1, 1)
        assert window.end == _utc(2025, 4, 1)
        assert window.limit == 50

    def test_from_config(self):
        expander = RecurrenceExpander.from_config(EngineConfig(expansion_limit=7, default_window_months=1))

        assert expander.default_limit == 7
        assert expander.default_window_months == 1

    def test_expand_without_window_uses_default(self, expander, make_template):
        template = make_template("FREQ=MONTHLY", _utc(2024, 12, 15, 9))

        starts = [o.starts_at for o in expander.expand(template)]

        assert starts == [_utc(2025, 1, 15, 9), _utc(2025, 2, 15, 9), _utc(2025, 3, 15, 9)]
