"""Persistence contract for calendar data and an in-memory implementation.

Every lookup is keyed by ``(id, user_id)``; a row owned by another user is
reported as missing. Records handed out are copies so callers cannot mutate
stored state behind the store's lock.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.exceptions import NotFound
from ..core.timezone_utils import now_utc
from ..models import (
    AvailabilitySnapshot,
    CalendarEvent,
    CalendarIntegration,
    FocusSession,
    TimeWindow,
    UserCalendarSetting,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_FOCUS_SESSION_LIMIT = 50
DEFAULT_SNAPSHOT_LIMIT = 10


class CalendarStore(Protocol):
    """Storage operations the engine depends on."""

    async def list_events(self, user_id: str, window: Optional[TimeWindow] = None) -> list[CalendarEvent]: ...

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent: ...

    async def create_event(self, user_id: str, fields: Mapping[str, Any]) -> CalendarEvent: ...

    async def update_event(self, user_id: str, event_id: str, fields: Mapping[str, Any]) -> CalendarEvent: ...

    async def delete_event(self, user_id: str, event_id: str) -> None: ...

    async def list_focus_sessions(self, user_id: str, limit: int = DEFAULT_FOCUS_SESSION_LIMIT) -> list[FocusSession]: ...

    async def get_focus_session(self, user_id: str, session_id: str) -> FocusSession: ...

    async def create_focus_session(self, user_id: str, fields: Mapping[str, Any]) -> FocusSession: ...

    async def update_focus_session(self, user_id: str, session_id: str, fields: Mapping[str, Any]) -> FocusSession: ...

    async def delete_focus_session(self, user_id: str, session_id: str) -> None: ...

    async def list_integrations(self, user_id: str) -> list[CalendarIntegration]: ...

    async def get_settings(self, user_id: str) -> Optional[UserCalendarSetting]: ...

    async def get_or_create_settings(self, user_id: str) -> UserCalendarSetting: ...

    async def update_settings(self, user_id: str, fields: Mapping[str, Any]) -> UserCalendarSetting: ...

    async def record_integration_sync(
        self,
        user_id: Optional[str],
        integration_id: str,
        *,
        synced_at: Optional[datetime],
        error: Optional[str],
    ) -> None: ...

    async def add_availability_snapshot(self, user_id: str, snapshot: AvailabilitySnapshot) -> AvailabilitySnapshot: ...

    async def list_availability_snapshots(
        self, user_id: str, provider: Optional[str] = None, limit: int = DEFAULT_SNAPSHOT_LIMIT
    ) -> list[AvailabilitySnapshot]: ...


class InMemoryCalendarStore:
    """Dict-backed CalendarStore guarded by a single asyncio.Lock."""

    def __init__(self, time_provider: Callable[[], datetime] = now_utc) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._events: dict[str, CalendarEvent] = {}
        self._focus_sessions: dict[str, FocusSession] = {}
        self._integrations: dict[str, CalendarIntegration] = {}
        self._settings: dict[str, UserCalendarSetting] = {}
        self._snapshots: list[AvailabilitySnapshot] = []
        self.time_provider = time_provider

    def _next_id(self) -> str:
        return str(next(self._ids))

    def _next_updated_at(self, previous: Optional[datetime]) -> datetime:
        # updated_at is part of the expansion cache key, so it must move on every write
        now = self.time_provider()
        if previous is not None and now <= previous:
            return previous + timedelta(milliseconds=1)
        return now

    @staticmethod
    def _owned(records: Mapping[str, ModelT], user_id: str, record_id: str, entity: str) -> ModelT:
        record = records.get(str(record_id))
        if record is None or getattr(record, "user_id", None) != user_id:
            raise NotFound(entity, record_id)
        return record

    # Events

    async def list_events(self, user_id: str, window: Optional[TimeWindow] = None) -> list[CalendarEvent]:
        """Events starting inside ``window`` plus every recurring template."""
        async with self._lock:
            events = [
                e.model_copy(deep=True)
                for e in self._events.values()
                if e.user_id == user_id and (window is None or e.is_template or window.contains(e.starts_at))
            ]
        events.sort(key=lambda e: e.starts_at)
        return events

    async def get_event(self, user_id: str, event_id: str) -> CalendarEvent:
        async with self._lock:
            return self._owned(self._events, user_id, event_id, "Calendar event").model_copy(deep=True)

    async def create_event(self, user_id: str, fields: Mapping[str, Any]) -> CalendarEvent:
        async with self._lock:
            now = self.time_provider()
            event = CalendarEvent(**fields, id=self._next_id(), user_id=user_id, created_at=now, updated_at=now)
            self._events[event.id] = event
            return event.model_copy(deep=True)

    async def update_event(self, user_id: str, event_id: str, fields: Mapping[str, Any]) -> CalendarEvent:
        async with self._lock:
            current = self._owned(self._events, user_id, event_id, "Calendar event")
            updated = current.model_copy(
                update={**fields, "updated_at": self._next_updated_at(current.updated_at)}
            )
            self._events[current.id] = updated
            return updated.model_copy(deep=True)

    async def delete_event(self, user_id: str, event_id: str) -> None:
        async with self._lock:
            current = self._owned(self._events, user_id, event_id, "Calendar event")
            del self._events[current.id]

    # Focus sessions

    async def list_focus_sessions(self, user_id: str, limit: int = DEFAULT_FOCUS_SESSION_LIMIT) -> list[FocusSession]:
        """Most recent sessions first."""
        async with self._lock:
            sessions = [s.model_copy(deep=True) for s in self._focus_sessions.values() if s.user_id == user_id]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return sessions[:limit]

    async def get_focus_session(self, user_id: str, session_id: str) -> FocusSession:
        async with self._lock:
            return self._owned(self._focus_sessions, user_id, session_id, "Focus session").model_copy(deep=True)

    async def create_focus_session(self, user_id: str, fields: Mapping[str, Any]) -> FocusSession:
        async with self._lock:
            session = FocusSession(**fields, id=self._next_id(), user_id=user_id)
            self._focus_sessions[session.id] = session
            return session.model_copy(deep=True)

    async def update_focus_session(self, user_id: str, session_id: str, fields: Mapping[str, Any]) -> FocusSession:
        async with self._lock:
            current = self._owned(self._focus_sessions, user_id, session_id, "Focus session")
            updated = current.model_copy(update=dict(fields))
            self._focus_sessions[current.id] = updated
            return updated.model_copy(deep=True)

    async def delete_focus_session(self, user_id: str, session_id: str) -> None:
        async with self._lock:
            current = self._owned(self._focus_sessions, user_id, session_id, "Focus session")
            del self._focus_sessions[current.id]

    # Integrations

    async def add_integration(self, user_id: str, integration: CalendarIntegration) -> CalendarIntegration:
        async with self._lock:
            stored = integration.model_copy(
                deep=True, update={"id": integration.id or self._next_id(), "user_id": user_id}
            )
            self._integrations[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_integrations(self, user_id: str) -> list[CalendarIntegration]:
        async with self._lock:
            integrations = [i.model_copy(deep=True) for i in self._integrations.values() if i.user_id == user_id]
        integrations.sort(key=lambda i: i.provider)
        return integrations

    async def get_integration(self, user_id: str, integration_id: str) -> CalendarIntegration:
        async with self._lock:
            return self._owned(self._integrations, user_id, integration_id, "Calendar integration").model_copy(
                deep=True
            )

    async def record_integration_sync(
        self,
        user_id: Optional[str],
        integration_id: str,
        *,
        synced_at: Optional[datetime],
        error: Optional[str],
    ) -> None:
        """Persist one integration's sync outcome.

        A failure (``error`` set) leaves ``last_synced_at`` untouched.
        """
        async with self._lock:
            current = self._owned(self._integrations, user_id, integration_id, "Calendar integration")
            if error is None:
                current.sync_error = None
                current.last_synced_at = synced_at
            else:
                current.sync_error = error

    # Availability snapshots

    async def add_availability_snapshot(self, user_id: str, snapshot: AvailabilitySnapshot) -> AvailabilitySnapshot:
        async with self._lock:
            stored = snapshot.model_copy(deep=True, update={"id": self._next_id(), "user_id": user_id})
            self._snapshots.append(stored)
            return stored.model_copy(deep=True)

    async def list_availability_snapshots(
        self, user_id: str, provider: Optional[str] = None, limit: int = DEFAULT_SNAPSHOT_LIMIT
    ) -> list[AvailabilitySnapshot]:
        """Newest first; later inserts win ties on ``synced_at``."""
        async with self._lock:
            snapshots = [
                s.model_copy(deep=True)
                for s in reversed(self._snapshots)
                if s.user_id == user_id and (provider is None or s.provider == provider)
            ]
        snapshots.sort(key=lambda s: s.synced_at, reverse=True)
        return snapshots[:limit]

    # Settings

    async def get_settings(self, user_id: str) -> Optional[UserCalendarSetting]:
        async with self._lock:
            settings = self._settings.get(user_id)
            return settings.model_copy(deep=True) if settings is not None else None

    async def get_or_create_settings(self, user_id: str) -> UserCalendarSetting:
        async with self._lock:
            settings = self._settings.setdefault(user_id, UserCalendarSetting(user_id=user_id))
            return settings.model_copy(deep=True)

    async def update_settings(self, user_id: str, fields: Mapping[str, Any]) -> UserCalendarSetting:
        async with self._lock:
            current = self._settings.get(user_id) or UserCalendarSetting(user_id=user_id)
            updated = current.model_copy(update={**fields, "user_id": user_id})
            self._settings[user_id] = updated
            return updated.model_copy(deep=True)

    # Seeding

    @classmethod
    def from_seed_file(cls, path: str | Path, time_provider: Callable[[], datetime] = now_utc) -> InMemoryCalendarStore:
        """Create a store pre-populated from a JSON seed file.

        The file holds top-level ``events``, ``focusSessions``, ``integrations``
        and ``settings`` arrays of camelCase records, each with a ``userId``.
        Malformed records are logged and skipped.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not a JSON object
        """
        store = cls(time_provider=time_provider)
        with Path(path).open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError("seed file JSON root must be an object")  # noqa: TRY004
        store.load_seed(data)
        return store

    def load_seed(self, data: Mapping[str, Any]) -> None:
        """Populate the store synchronously; call before serving requests."""
        loaded = {
            "events": self._seed_records(data.get("events"), CalendarEvent, self._events),
            "focusSessions": self._seed_records(data.get("focusSessions"), FocusSession, self._focus_sessions),
            "integrations": self._seed_records(data.get("integrations"), CalendarIntegration, self._integrations),
        }
        for raw in data.get("settings") or []:
            try:
                settings = UserCalendarSetting.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed seed settings: %s", exc)
                continue
            if settings.user_id:
                self._settings[settings.user_id] = settings
        logger.info(
            "Seeded store: %d events, %d focus sessions, %d integrations, %d settings",
            loaded["events"],
            loaded["focusSessions"],
            loaded["integrations"],
            len(self._settings),
        )

    def _seed_records(self, raw_records: Any, model: type[ModelT], target: dict[str, ModelT]) -> int:
        records: list[ModelT] = []
        for raw in raw_records or []:
            try:
                record = model.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed seed %s: %s", model.__name__, exc)
                continue
            if getattr(record, "user_id", None) is None:
                logger.warning("Skipping seed %s without userId", model.__name__)
                continue
            records.append(record)

        # Generated ids must not collide with seeded numeric ids
        seeded_ids = [int(r.id) for r in records if getattr(r, "id", None) and str(r.id).isdigit()]
        if seeded_ids:
            self._ids = itertools.count(max(max(seeded_ids) + 1, next(self._ids)))

        for record in records:
            record_id = getattr(record, "id", None) or self._next_id()
            target[str(record_id)] = record.model_copy(update={"id": str(record_id)})
        return len(records)
