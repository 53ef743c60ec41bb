"""Create, update and delete operations for events, focus sessions, settings and snapshots."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from ..core.timezone_utils import now_utc
from ..models import AvailabilitySnapshot, CalendarEvent, FocusSession, UserCalendarSetting
from .payloads import (
    DEFAULT_SNAPSHOT_LIMIT,
    clamp_snapshot_limit,
    normalize_availability_snapshot,
    normalize_event_payload,
    normalize_focus_session_payload,
    normalize_settings_payload,
    normalize_snapshot_provider,
)
from .store import DEFAULT_FOCUS_SESSION_LIMIT, CalendarStore

logger = logging.getLogger(__name__)


class CalendarService:
    """Validates payloads and applies them to the store.

    Updates merge the payload over the stored record before validation, so a
    partial payload keeps every field it does not mention.
    """

    def __init__(self, store: CalendarStore, time_provider: Callable[[], datetime] = now_utc):
        self.store = store
        self.time_provider = time_provider

    async def create_event(self, user_id: str, payload: Mapping[str, Any]) -> CalendarEvent:
        fields = normalize_event_payload(payload)
        event = await self.store.create_event(user_id, fields)
        logger.info("Created calendar event %s for user %s", event.id, user_id)
        return event

    async def update_event(self, user_id: str, event_id: str, payload: Mapping[str, Any]) -> CalendarEvent:
        """Merge ``payload`` onto the stored event.

        The store bumps ``updated_at``, which changes the expansion cache key
        for recurring templates, so stale occurrences are never served.

        Raises:
            NotFound: If the event is missing or owned by another user
            InvalidEventPayload: If the merged payload is invalid
        """
        existing = await self.store.get_event(user_id, event_id)
        fields = normalize_event_payload(payload, existing=existing)
        event = await self.store.update_event(user_id, event_id, fields)
        logger.info("Updated calendar event %s for user %s", event_id, user_id)
        return event

    async def delete_event(self, user_id: str, event_id: str) -> None:
        await self.store.delete_event(user_id, event_id)
        logger.info("Deleted calendar event %s for user %s", event_id, user_id)

    async def list_focus_sessions(self, user_id: str, limit: int = DEFAULT_FOCUS_SESSION_LIMIT) -> list[FocusSession]:
        return await self.store.list_focus_sessions(user_id, limit=limit)

    async def create_focus_session(self, user_id: str, payload: Mapping[str, Any]) -> FocusSession:
        fields = normalize_focus_session_payload(payload)
        return await self.store.create_focus_session(user_id, fields)

    async def update_focus_session(
        self, user_id: str, session_id: str, payload: Mapping[str, Any]
    ) -> FocusSession:
        existing = await self.store.get_focus_session(user_id, session_id)
        fields = normalize_focus_session_payload(payload, existing=existing)
        return await self.store.update_focus_session(user_id, session_id, fields)

    async def delete_focus_session(self, user_id: str, session_id: str) -> None:
        await self.store.delete_focus_session(user_id, session_id)

    async def get_settings(self, user_id: str) -> UserCalendarSetting:
        """Stored settings, or defaults when the user has none yet."""
        settings = await self.store.get_settings(user_id)
        return settings if settings is not None else UserCalendarSetting(user_id=user_id)

    async def update_settings(self, user_id: str, payload: Mapping[str, Any]) -> UserCalendarSetting:
        """Find-or-create the user's settings row and replace its values."""
        fields = normalize_settings_payload(payload)
        return await self.store.update_settings(user_id, fields)

    async def record_availability_snapshot(
        self,
        user_id: str,
        provider: Any,
        *,
        availability: Any = None,
        metadata: Any = None,
        synced_at: Any = None,
    ) -> AvailabilitySnapshot:
        """Persist one provider's availability as of ``synced_at`` (default now).

        Raises:
            InvalidEventPayload: If provider is blank or synced_at is not an instant
        """
        snapshot = normalize_availability_snapshot(
            user_id,
            provider,
            availability=availability,
            metadata=metadata,
            synced_at=synced_at,
            now=self.time_provider(),
        )
        stored = await self.store.add_availability_snapshot(user_id, snapshot)
        logger.info("Recorded %s availability snapshot for user %s", stored.provider, user_id)
        return stored

    async def list_availability_snapshots(
        self, user_id: str, provider: Any = None, limit: Any = DEFAULT_SNAPSHOT_LIMIT
    ) -> list[AvailabilitySnapshot]:
        """Newest snapshots first, optionally for one provider; limit is clamped to 1..100."""
        return await self.store.list_availability_snapshots(
            user_id, provider=normalize_snapshot_provider(provider), limit=clamp_snapshot_limit(limit)
        )
