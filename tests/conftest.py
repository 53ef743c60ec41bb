from collections.abc import AsyncIterator, Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from calendar_engine.core.http_client import close_all_clients
from calendar_engine.core.timezone_utils import TEST_TIME_ENV
from calendar_engine.domain.store import InMemoryCalendarStore
from calendar_engine.models import CalendarEvent, RecurrenceSpec
from calendar_engine.recurrence.expansion_cache import reset_expansion_cache

FIXED_NOW = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear CALENDAR_ENGINE_TEST_TIME and the process-wide expansion cache around each test."""
    monkeypatch.delenv(TEST_TIME_ENV, raising=False)
    reset_expansion_cache()
    yield
    monkeypatch.delenv(TEST_TIME_ENV, raising=False)
    reset_expansion_cache()


@pytest.fixture(autouse=True)
async def cleanup_shared_http_clients() -> AsyncIterator[None]:
    """Close shared httpx clients after every test to avoid leaking connections."""
    yield
    await close_all_clients()


@pytest.fixture
def fixed_now() -> Callable[[], datetime]:
    """Time provider frozen at 2025-01-01T00:00:00Z."""
    return lambda: FIXED_NOW


@pytest.fixture
def store(fixed_now: Callable[[], datetime]) -> InMemoryCalendarStore:
    return InMemoryCalendarStore(time_provider=fixed_now)


@pytest.fixture
def make_template() -> Callable[..., CalendarEvent]:
    """Builder for recurring template events.

    Defaults to a one-hour event with id "tpl-1" owned by "user-1".
    """

    def builder(
        rule: str,
        starts_at: datetime,
        duration_minutes: int = 60,
        until: datetime | None = None,
        count: int | None = None,
        event_id: str = "tpl-1",
        **extra: Any,
    ) -> CalendarEvent:
        return CalendarEvent(
            id=event_id,
            user_id=extra.pop("user_id", "user-1"),
            title=extra.pop("title", "Standup"),
            starts_at=starts_at,
            ends_at=starts_at + timedelta(minutes=duration_minutes),
            recurrence=RecurrenceSpec(rule=rule, until=until, count=count),
            **extra,
        )

    return builder


@pytest.fixture
def sample_busy_ics() -> str:
    """ICS feed with two busy blocks on 2025-01-06 and one block missing DTEND."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Calendar Engine Test//EN\r\n"
        "BEGIN:VEVENT\r\n"
        "UID:busy-1@test\r\n"
        "DTSTART:20250106T100000Z\r\n"
        "DTEND:20250106T110000Z\r\n"
        "SUMMARY:Client call\r\n"
        "END:VEVENT\r\n"
        "BEGIN:VEVENT\r\n"
        "UID:busy-2@test\r\n"
        "DTSTART;TZID=Europe/London:20250106T140000\r\n"
        "DTEND;TZID=Europe/London:20250106T150000\r\n"
        "SUMMARY:Dentist\\, downtown\r\n"
        "END:VEVENT\r\n"
        "BEGIN:VEVENT\r\n"
        "UID:busy-3@test\r\n"
        "DTSTART:20250106T160000Z\r\n"
        "SUMMARY:No end\r\n"
        "END:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )
