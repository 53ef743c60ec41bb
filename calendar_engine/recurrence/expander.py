"""Expansion of recurring templates into concrete occurrences within a window."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, FR, MO, SA, SU, TH, TU, WE, WEEKLY, rrule

from ..core.timezone_utils import epoch_millis, now_utc, to_utc
from ..models import CalendarEvent, OccurrenceId
from .rule_codec import DecodedRule, RecurrenceRuleCodec

logger = logging.getLogger(__name__)

DEFAULT_EXPANSION_LIMIT = 50
DEFAULT_WINDOW_MONTHS = 3

_RRULE_FREQUENCIES = {"DAILY": DAILY, "WEEKLY": WEEKLY}
_RRULE_WEEKDAYS = {"SU": SU, "MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA}


@dataclass(frozen=True)
class ExpansionWindow:
    """Generation window ``[start, end]`` plus the per-template occurrence limit."""

    start: datetime
    end: datetime
    limit: int = DEFAULT_EXPANSION_LIMIT

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))

    @classmethod
    def default(
        cls,
        now: Optional[datetime] = None,
        months: int = DEFAULT_WINDOW_MONTHS,
        limit: int = DEFAULT_EXPANSION_LIMIT,
    ) -> ExpansionWindow:
        """Window from now to now plus ``months`` calendar months."""
        start = to_utc(now) if now is not None else now_utc()
        return cls(start=start, end=start + relativedelta(months=months), limit=limit)


def _tighter(a: Any, b: Any) -> Any:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _months_between(earlier: datetime, later: datetime) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


class RecurrenceExpander:
    """Generates occurrences for DAILY, WEEKLY and MONTHLY templates.

    Expansion is pure: the template is never modified and each occurrence is a
    shallow copy with an :class:`OccurrenceId` attached.
    """

    def __init__(
        self,
        codec: Optional[RecurrenceRuleCodec] = None,
        default_limit: int = DEFAULT_EXPANSION_LIMIT,
        default_window_months: int = DEFAULT_WINDOW_MONTHS,
        time_provider: Callable[[], datetime] = now_utc,
    ):
        self.codec = codec or RecurrenceRuleCodec()
        self.default_limit = default_limit
        self.default_window_months = default_window_months
        self.time_provider = time_provider

    @classmethod
    def from_config(cls, config: Any) -> RecurrenceExpander:
        """Build an expander from an EngineConfig-like object."""
        return cls(
            default_limit=getattr(config, "expansion_limit", DEFAULT_EXPANSION_LIMIT),
            default_window_months=getattr(config, "default_window_months", DEFAULT_WINDOW_MONTHS),
        )

    def default_window(self) -> ExpansionWindow:
        return ExpansionWindow.default(
            now=self.time_provider(), months=self.default_window_months, limit=self.default_limit
        )

    def expand(self, event: CalendarEvent, window: Optional[ExpansionWindow] = None) -> list[CalendarEvent]:
        """Expand a template into occurrences inside the window.

        Args:
            event: Template event (non-recurring events yield nothing)
            window: Generation window; defaults to now..+N months

        Returns:
            Occurrences in ascending start order
        """
        if event.recurrence is None or not event.recurrence.rule:
            return []
        if event.id is None:
            logger.debug("Skipping expansion of template without id: %r", event.title)
            return []

        decoded = self.codec.decode(event.recurrence.rule)
        if not decoded.is_supported:
            logger.debug(
                "Unsupported recurrence %r on event %s; no occurrences generated",
                event.recurrence.rule,
                event.id,
            )
            return []

        window = window or self.default_window()
        base = event.starts_at
        count = _tighter(decoded.count, event.recurrence.count)
        until = _tighter(decoded.until, event.recurrence.until)
        cap = max(count or 0, window.limit)
        duration = event.ends_at - event.starts_at if event.ends_at is not None else None

        # COUNT is tallied from the template start, so counted rules are walked
        # from the base; open-ended rules jump straight to the window.
        resume_at = None if count is not None else window.start

        occurrences: list[CalendarEvent] = []
        generated = 0
        for start in self._candidates(decoded, base, resume_at):
            if until is not None and start > until:
                break
            generated += 1
            if count is not None and generated > count:
                break
            if start < window.start:
                continue
            if start > window.end:
                break
            occurrences.append(self._make_occurrence(event, start, duration))
            if len(occurrences) >= cap:
                break

        logger.debug(
            "Expanded event %s (%s): %d occurrences in window %s..%s",
            event.id,
            event.recurrence.rule,
            len(occurrences),
            window.start.isoformat(),
            window.end.isoformat(),
        )
        return occurrences

    def _candidates(
        self, decoded: DecodedRule, base: datetime, resume_at: Optional[datetime] = None
    ) -> Iterator[datetime]:
        """Yield candidate starts strictly after ``base`` in ascending order.

        When ``resume_at`` is later than ``base`` generation starts at the first
        candidate on or after it instead of walking every period since ``base``.
        Generators are unbounded; the caller stops on UNTIL, COUNT or the window.
        """
        if resume_at is not None and resume_at <= base:
            resume_at = None

        if decoded.frequency == "MONTHLY":
            yield from self._monthly_candidates(decoded, base, resume_at)
            return

        if decoded.frequency == "WEEKLY" and decoded.by_weekday:
            by_weekday: Optional[tuple[Any, ...]] = tuple(_RRULE_WEEKDAYS[code] for code in decoded.by_weekday)
        else:
            # WEEKLY without BYDAY repeats on the template's own weekday
            by_weekday = None

        rule = rrule(
            _RRULE_FREQUENCIES[decoded.frequency],
            dtstart=base,
            interval=decoded.interval,
            byweekday=by_weekday,
            wkst=SU,
        )
        if resume_at is None:
            yield from rule.xafter(base, inc=False)
        else:
            yield from rule.xafter(resume_at, inc=True)

    def _monthly_candidates(
        self, decoded: DecodedRule, base: datetime, resume_at: Optional[datetime]
    ) -> Iterator[datetime]:
        # Offsets from base rather than chained additions so day clamping
        # in short months does not drift later occurrences.
        interval = decoded.interval
        first = 1
        if resume_at is not None:
            first = max(1, _months_between(base, resume_at) // interval - 1)
        for k in itertools.count(first):
            candidate = base + relativedelta(months=k * interval)
            if resume_at is not None and candidate < resume_at:
                continue
            yield candidate

    def _make_occurrence(
        self, template: CalendarEvent, start: datetime, duration: Optional[timedelta]
    ) -> CalendarEvent:
        occurrence_id = OccurrenceId(template_id=str(template.id), occurrence_epoch_millis=epoch_millis(start))
        return template.model_copy(
            update={
                "id": None,
                "occurrence_id": occurrence_id,
                "starts_at": start,
                "ends_at": start + duration if duration is not None else None,
                "recurring_instance": True,
                "parent_event_id": template.id,
            }
        )
