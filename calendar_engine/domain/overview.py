"""Calendar overview and ICS export orchestration.

Loads a user's data from the store, expands recurring templates through the
expansion cache, aggregates availability and computes summary statistics.
Schedule export feeds the same overview into the ICS codec.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from ..availability.aggregator import AvailabilityAggregator
from ..core.exceptions import InvalidEventPayload
from ..core.health_tracker import HealthTracker
from ..core.timezone_utils import now_utc, parse_instant, serialize_iso
from ..ics.codec import IcsCodec
from ..models import (
    AvailabilitySnapshot,
    BusyWindow,
    CalendarEvent,
    CalendarIntegration,
    FocusSession,
    TimeWindow,
    UserCalendarSetting,
)
from ..recurrence.expander import DEFAULT_EXPANSION_LIMIT, DEFAULT_WINDOW_MONTHS, ExpansionWindow
from ..recurrence.expansion_cache import ExpansionCache, get_expansion_cache
from .store import CalendarStore

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
MAX_OPEN_FOCUS_SESSIONS = 5
OVERVIEW_SNAPSHOT_LIMIT = 10


@dataclass
class OverviewStats:
    total_events: int
    upcoming_events: int
    events_by_type: dict[str, int]
    next_event: Optional[CalendarEvent]
    open_focus_sessions: list[FocusSession]

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "upcomingEvents": self.upcoming_events,
            "eventsByType": dict(self.events_by_type),
            "nextEvent": self.next_event.to_api_dict() if self.next_event is not None else None,
            "openFocusSessions": [s.to_api_dict() for s in self.open_focus_sessions],
        }


@dataclass
class CalendarOverview:
    """Everything the calendar screen needs for one window."""

    window: TimeWindow
    events: list[CalendarEvent]
    focus_sessions: list[FocusSession]
    integrations: list[CalendarIntegration]
    settings: UserCalendarSetting
    availability: list[BusyWindow]
    stats: OverviewStats
    availability_snapshots: list[AvailabilitySnapshot] = field(default_factory=list)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "window": {"from": serialize_iso(self.window.start), "to": serialize_iso(self.window.end)},
            "events": [e.to_api_dict() for e in self.events],
            "focusSessions": [s.to_api_dict() for s in self.focus_sessions],
            "integrations": [i.to_api_dict() for i in self.integrations],
            "settings": self.settings.to_api_dict(),
            "availability": [w.to_api_dict() for w in self.availability],
            "stats": self.stats.to_api_dict(),
            "availabilitySnapshots": {
                "latest": self.availability_snapshots[0].to_api_dict() if self.availability_snapshots else None,
                "snapshots": [s.to_api_dict() for s in self.availability_snapshots],
            },
        }


@dataclass(frozen=True)
class IcsExport:
    """A rendered ICS download."""

    filename: str
    body: str
    event_count: int
    availability_count: int = 0
    content_type: str = ICS_CONTENT_TYPE


@dataclass
class _LoadedData:
    events: list[CalendarEvent]
    focus_sessions: list[FocusSession]
    integrations: list[CalendarIntegration]
    settings: UserCalendarSetting


def build_overview_stats(
    events: list[CalendarEvent], focus_sessions: list[FocusSession], now: datetime
) -> OverviewStats:
    """Compute totals, upcoming count, type histogram, next event and open focus sessions.

    Events without a start count as upcoming and sort after every dated event.
    """
    upcoming = [e for e in events if e.starts_at is None or e.starts_at >= now]
    dated = [e for e in upcoming if e.starts_at is not None]
    if dated:
        next_event: Optional[CalendarEvent] = min(dated, key=lambda e: e.starts_at)
    else:
        next_event = upcoming[0] if upcoming else None

    by_type = Counter(e.event_type or "other" for e in events)
    open_sessions = [s for s in focus_sessions if not s.completed][:MAX_OPEN_FOCUS_SESSIONS]

    return OverviewStats(
        total_events=len(events),
        upcoming_events=len(upcoming),
        events_by_type=dict(by_type),
        next_event=next_event,
        open_focus_sessions=open_sessions,
    )


class CalendarOverviewOrchestrator:
    """Builds overviews and ICS exports for a user."""

    def __init__(
        self,
        store: CalendarStore,
        expansion_cache: Optional[ExpansionCache] = None,
        aggregator: Optional[AvailabilityAggregator] = None,
        codec: Optional[IcsCodec] = None,
        time_provider: Callable[[], datetime] = now_utc,
        default_window_months: int = DEFAULT_WINDOW_MONTHS,
        expansion_limit: int = DEFAULT_EXPANSION_LIMIT,
    ):
        self.store = store
        self.expansion_cache = expansion_cache if expansion_cache is not None else get_expansion_cache()
        self.aggregator = aggregator or AvailabilityAggregator(store=store)
        self.codec = codec or IcsCodec()
        self.time_provider = time_provider
        self.default_window_months = default_window_months
        self.expansion_limit = expansion_limit

    @classmethod
    def from_config(
        cls, store: CalendarStore, config: Any, health_tracker: Optional[HealthTracker] = None
    ) -> CalendarOverviewOrchestrator:
        """Wire the orchestrator and its collaborators from an EngineConfig."""
        from ..availability.gateway import AvailabilityGateway

        aggregator = AvailabilityAggregator(
            gateway=AvailabilityGateway(http_timeout_seconds=config.http_timeout_seconds),
            store=store,
            fetch_concurrency=config.fetch_concurrency,
            fetch_timeout_seconds=config.fetch_timeout_seconds,
            health_tracker=health_tracker,
        )
        return cls(
            store=store,
            expansion_cache=get_expansion_cache(config),
            aggregator=aggregator,
            codec=IcsCodec(prodid=config.ics_prodid),
            default_window_months=config.default_window_months,
            expansion_limit=config.expansion_limit,
        )

    def resolve_window(self, from_: Any = None, to: Any = None) -> ExpansionWindow:
        """Resolve the query window; defaults to now through N calendar months.

        Raises:
            InvalidEventPayload: If a bound is unparseable or from is after to
        """
        start = self._parse_bound(from_, "from") if from_ not in (None, "") else self.time_provider()
        if to not in (None, ""):
            end = self._parse_bound(to, "to")
        else:
            end = start + relativedelta(months=self.default_window_months)
        if start > end:
            raise InvalidEventPayload("from", "from must be before to.")
        return ExpansionWindow(start=start, end=end, limit=self.expansion_limit)

    @staticmethod
    def _parse_bound(value: Any, name: str) -> datetime:
        try:
            return parse_instant(value)
        except ValueError as e:
            raise InvalidEventPayload(name, f"{name} must be a valid ISO-8601 date.") from e

    async def _load(self, user_id: str, window: TimeWindow) -> _LoadedData:
        events, focus_sessions, integrations, settings = await asyncio.gather(
            self.store.list_events(user_id, window),
            self.store.list_focus_sessions(user_id),
            self.store.list_integrations(user_id),
            self.store.get_or_create_settings(user_id),
        )
        return _LoadedData(events, focus_sessions, integrations, settings)

    def _expand_events(self, events: list[CalendarEvent], window: ExpansionWindow) -> list[CalendarEvent]:
        """Replace templates with their occurrences; keep a template only if it starts in the window."""
        expanded: list[CalendarEvent] = []
        for event in events:
            if event.is_template:
                if window.start <= event.starts_at <= window.end:
                    expanded.append(event)
                expanded.extend(self.expansion_cache.get_or_expand(event, window))
            else:
                expanded.append(event)
        expanded.sort(key=lambda e: (e.starts_at, e.event_key or ""))
        return expanded

    async def get_overview(self, user_id: str, from_: Any = None, to: Any = None) -> CalendarOverview:
        """Build the overview for ``user_id`` over ``[from_, to]``.

        Integration failures never fail the overview; they surface as
        ``sync_error`` on the affected integration.
        """
        window = self.resolve_window(from_, to)
        time_window = TimeWindow(start=window.start, end=window.end)

        loaded = await self._load(user_id, time_window)
        events = self._expand_events(loaded.events, window)
        aggregation = await self.aggregator.aggregate(loaded.integrations, time_window)
        # Read after aggregating so the latest snapshot reflects this sync
        snapshots = await self.store.list_availability_snapshots(user_id, limit=OVERVIEW_SNAPSHOT_LIMIT)

        stats = build_overview_stats(events, loaded.focus_sessions, self.time_provider())
        logger.debug(
            "Overview for user %s: %d events, %d busy windows, %d integration failures",
            user_id,
            len(events),
            len(aggregation.windows),
            len(aggregation.failed),
        )
        return CalendarOverview(
            window=time_window,
            events=events,
            focus_sessions=loaded.focus_sessions,
            integrations=loaded.integrations,
            settings=loaded.settings,
            availability=aggregation.windows,
            stats=stats,
            availability_snapshots=snapshots,
        )

    async def export_event_ics(self, user_id: str, event_id: str) -> IcsExport:
        """Render a single stored event as an ICS download.

        Raises:
            NotFound: If the event is missing or owned by another user
        """
        event = await self.store.get_event(user_id, event_id)
        body = self.codec.serialize([event], timezone=event.timezone)
        return IcsExport(filename=f"calendar-event-{event.id}.ics", body=body, event_count=1)

    async def export_schedule_ics(
        self, user_id: str, from_: Any = None, to: Any = None, include_availability: bool = True
    ) -> IcsExport:
        """Render every event in the window, plus busy windows when requested."""
        overview = await self.get_overview(user_id, from_, to)
        availability = overview.availability if include_availability else []
        body = self.codec.serialize(
            overview.events,
            availability=availability,
            calendar_name="Calendar schedule",
            timezone=overview.settings.timezone,
        )
        return IcsExport(
            filename=f"calendar-schedule-{user_id}.ics",
            body=body,
            event_count=len(overview.events),
            availability_count=len(availability),
        )
