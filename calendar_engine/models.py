"""Data models for calendar events, integrations and busy time."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .core.timezone_utils import serialize_iso, to_utc


class EventType(str, Enum):
    """Kinds of calendar events."""

    EVENT = "event"
    INTERVIEW = "interview"
    PROJECT = "project"
    GIG = "gig"
    MENTORSHIP = "mentorship"
    VOLUNTEERING = "volunteering"
    NETWORKING = "networking"
    FOCUS = "focus"
    OTHER = "other"


class EventSource(str, Enum):
    """Where an event was created."""

    MANUAL = "manual"
    GOOGLE = "google"
    OUTLOOK = "outlook"
    NATIVE = "native"


class EventVisibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"
    TEAM = "team"


class FocusType(str, Enum):
    DEEP_WORK = "deep_work"
    PLANNING = "planning"
    LEARNING = "learning"
    WELLNESS = "wellness"
    ADMIN = "admin"


class CalendarView(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    AGENDA = "agenda"


class _ApiModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire, UTC datetimes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
        coerce_numbers_to_str=True,
    )

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys and ISO-8601 ``Z`` timestamps."""
        return self.model_dump(by_alias=True, mode="json")


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return to_utc(value) if value is not None else None


class OccurrenceId(BaseModel):
    """Identity of a generated occurrence: the template plus the occurrence start."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    occurrence_epoch_millis: int

    def __str__(self) -> str:
        return f"{self.template_id}-occurrence-{self.occurrence_epoch_millis}"


class RecurrenceSpec(_ApiModel):
    """Recurrence embedded in a template event."""

    rule: str
    until: Optional[datetime] = None
    count: Optional[int] = None
    summary: Optional[str] = None

    @field_validator("until", mode="after")
    @classmethod
    def _normalize_until(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @field_serializer("until")
    def _serialize_until(self, v: Optional[datetime]) -> Optional[str]:
        return serialize_iso(v)


class CalendarEvent(_ApiModel):
    """A calendar event, a recurring template, or a generated occurrence.

    Occurrences carry ``occurrence_id`` and no stored ``id``; the id is
    flattened to ``{templateId}-occurrence-{epochMillis}`` only when serialized.
    """

    id: Optional[str] = None
    user_id: Optional[str] = None
    title: str
    event_type: EventType = EventType.EVENT
    source: EventSource = EventSource.MANUAL
    starts_at: datetime
    ends_at: Optional[datetime] = None
    is_all_day: bool = False
    location: Optional[str] = None
    description: Optional[str] = None
    video_conference_link: Optional[str] = None
    reminder_minutes: Optional[int] = None
    visibility: EventVisibility = EventVisibility.PRIVATE
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = None
    color_hex: Optional[str] = None
    timezone: Optional[str] = None
    recurrence: Optional[RecurrenceSpec] = None
    parent_event_id: Optional[str] = None
    recurring_instance: bool = False
    occurrence_id: Optional[OccurrenceId] = Field(default=None, exclude=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("starts_at", "ends_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _normalize_datetimes(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @field_serializer("starts_at", "ends_at", "created_at", "updated_at")
    def _serialize_datetimes(self, v: Optional[datetime]) -> Optional[str]:
        return serialize_iso(v)

    @field_serializer("id")
    def _serialize_id(self, v: Optional[str]) -> Optional[str]:
        if self.occurrence_id is not None:
            return str(self.occurrence_id)
        return v

    @property
    def event_key(self) -> Optional[str]:
        """Stable identifier for stored events and generated occurrences alike."""
        if self.occurrence_id is not None:
            return str(self.occurrence_id)
        return self.id

    @property
    def is_template(self) -> bool:
        return bool(self.recurrence and self.recurrence.rule) and not self.recurring_instance


class FocusSession(_ApiModel):
    """A block of focused work; no recurrence."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    focus_type: FocusType = FocusType.DEEP_WORK
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    completed: bool = False
    notes: Optional[str] = None

    @field_validator("started_at", "ended_at", mode="after")
    @classmethod
    def _normalize_datetimes(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @field_serializer("started_at", "ended_at")
    def _serialize_datetimes(self, v: Optional[datetime]) -> Optional[str]:
        return serialize_iso(v)


class CalendarIntegration(_ApiModel):
    """A connected external calendar; ``metadata`` holds its busy-time data."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    provider: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: Optional[datetime] = None
    sync_error: Optional[str] = None

    @field_validator("last_synced_at", mode="after")
    @classmethod
    def _normalize_synced(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @field_serializer("last_synced_at")
    def _serialize_synced(self, v: Optional[datetime]) -> Optional[str]:
        return serialize_iso(v)


class AvailabilitySnapshot(_ApiModel):
    """Point-in-time record of one provider's availability after a sync."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    provider: str
    synced_at: datetime
    availability: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("synced_at", mode="after")
    @classmethod
    def _normalize_synced(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_serializer("synced_at")
    def _serialize_synced(self, v: datetime) -> Optional[str]:
        return serialize_iso(v)


class UserCalendarSetting(_ApiModel):
    """Per-user calendar preferences, one row per user."""

    user_id: Optional[str] = None
    timezone: str = "UTC"
    week_start: int = 1
    work_start_minutes: int = 480
    work_end_minutes: int = 1020
    default_view: CalendarView = CalendarView.AGENDA
    default_reminder_minutes: int = 30
    auto_focus_blocks: bool = False
    share_availability: bool = False
    color_hex: Optional[str] = None


class BusyWindow(_ApiModel):
    """An interval during which the user is unavailable; never persisted."""

    model_config = ConfigDict(frozen=True)

    provider: str
    start: datetime
    end: datetime
    title: Optional[str] = None

    @field_validator("start", "end", mode="after")
    @classmethod
    def _normalize_bounds(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_serializer("start", "end")
    def _serialize_bounds(self, v: datetime) -> Optional[str]:
        return serialize_iso(v)

    @property
    def dedupe_key(self) -> tuple[str, datetime, datetime]:
        return (self.provider, self.start, self.end)


@dataclass(frozen=True)
class TimeWindow:
    """Closed query interval ``[start, end]`` in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end
