"""Validation and normalization of event, focus session, settings and snapshot payloads.

Payloads arrive with camelCase keys from the API (snake_case is accepted
too) and are validated by the pydantic models below. Each normalizer returns
a dict of model field values or raises :class:`InvalidEventPayload` naming the
offending field.
"""

from __future__ import annotations

import datetime
import re
from collections.abc import Mapping
from typing import Any, ClassVar, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..core.exceptions import InvalidEventPayload
from ..core.timezone_utils import now_utc, parse_instant
from ..models import (
    AvailabilitySnapshot,
    CalendarEvent,
    CalendarView,
    EventSource,
    EventType,
    EventVisibility,
    FocusSession,
    FocusType,
    RecurrenceSpec,
    UserCalendarSetting,
)
from ..recurrence.rule_codec import MAX_COUNT, RecurrenceRuleCodec

MAX_REMINDER_MINUTES = 10080
MAX_RULE_LENGTH = 512
MINUTES_PER_DAY = 1440
DEFAULT_SNAPSHOT_LIMIT = 10
MAX_SNAPSHOT_LIMIT = 100

_COLOR_RE = re.compile(r"^#([0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$")

_codec = RecurrenceRuleCodec()

_SETTINGS_DEFAULTS = UserCalendarSetting()


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _camel_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {to_camel(key) if "_" in key else key: value for key, value in payload.items()}


def _parse_color_hex(value: Any) -> Optional[str]:
    if _blank(value):
        return None
    text = str(value).strip()
    normalized = text if text.startswith("#") else f"#{text}"
    if not _COLOR_RE.match(normalized):
        raise ValueError("colorHex must be a valid hex colour code.")
    return normalized.upper()


def _parse_optional_instant(value: Any, field: str) -> Optional[datetime.datetime]:
    if _blank(value):
        return None
    try:
        return parse_instant(value)
    except ValueError:
        raise ValueError(f"{field} must be a valid ISO-8601 date.") from None


class _PayloadModel(BaseModel):
    """Base for request payloads.

    ``messages`` maps an API field name to the message reported when pydantic's
    own type or range checks reject it.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
        coerce_numbers_to_str=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    messages: ClassVar[dict[str, str]] = {}


PayloadT = TypeVar("PayloadT", bound=_PayloadModel)


class EventPayload(_PayloadModel):
    """Event create/update payload.

    A ``recurrence`` object with ``frequency`` is a structured request for the
    rule codec; one with ``rule`` (a previously stored recurrence) is unpacked
    into the ``recurrenceRule`` fields.
    """

    messages: ClassVar[dict[str, str]] = {
        "title": "title is required.",
        "startsAt": "startsAt is required.",
        "eventType": "eventType is invalid.",
        "source": "source must be a recognised calendar provider.",
        "visibility": "visibility is invalid.",
        "isAllDay": "isAllDay must be true or false.",
        "reminderMinutes": f"reminderMinutes must be between 0 and {MAX_REMINDER_MINUTES}.",
        "relatedEntityId": "relatedEntityId must be a positive integer.",
        "recurrence": "recurrence must be an object.",
        "recurrenceCount": f"recurrenceCount must be between 1 and {MAX_COUNT}.",
    }

    title: str
    event_type: EventType = EventType.EVENT
    source: EventSource = EventSource.MANUAL
    visibility: EventVisibility = EventVisibility.PRIVATE
    starts_at: datetime.datetime
    ends_at: Optional[datetime.datetime] = None
    is_all_day: bool = False
    location: Optional[str] = None
    description: Optional[str] = None
    video_conference_link: Optional[str] = None
    reminder_minutes: Optional[int] = Field(None, ge=0, le=MAX_REMINDER_MINUTES)
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = Field(None, gt=0)
    color_hex: Optional[str] = None
    timezone: Optional[str] = None
    recurrence: Optional[dict[str, Any]] = None
    recurrence_rule: Optional[str] = None
    recurrence_ends_at: Optional[datetime.datetime] = None
    recurrence_count: Optional[int] = Field(None, ge=1, le=MAX_COUNT)

    @model_validator(mode="before")
    @classmethod
    def _unpack_stored_recurrence(cls, data: Any) -> Any:
        recurrence = data.get("recurrence") if isinstance(data, Mapping) else None
        if isinstance(recurrence, Mapping) and "frequency" not in recurrence and recurrence.get("rule"):
            return {
                **data,
                "recurrence": None,
                "recurrenceRule": recurrence.get("rule"),
                "recurrenceEndsAt": recurrence.get("until"),
                "recurrenceCount": recurrence.get("count"),
            }
        return data

    @field_validator("title", mode="before")
    @classmethod
    def _require_title(cls, v: Any) -> Any:
        if _blank(v):
            raise ValueError("title is required.")
        return v

    @field_validator("event_type", "source", "visibility", mode="before")
    @classmethod
    def _blank_to_default(cls, v: Any, info: ValidationInfo) -> Any:
        if _blank(v):
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("starts_at", mode="before")
    @classmethod
    def _parse_start(cls, v: Any) -> datetime.datetime:
        if _blank(v):
            raise ValueError("startsAt is required.")
        return _parse_optional_instant(v, "startsAt")

    @field_validator("ends_at", "recurrence_ends_at", mode="before")
    @classmethod
    def _parse_optional_dates(cls, v: Any, info: ValidationInfo) -> Optional[datetime.datetime]:
        return _parse_optional_instant(v, to_camel(info.field_name))

    @field_validator("ends_at")
    @classmethod
    def _ends_not_before_start(cls, v: Optional[datetime.datetime], info: ValidationInfo) -> Optional[datetime.datetime]:
        starts_at = info.data.get("starts_at")
        if v is not None and starts_at is not None and v < starts_at:
            raise ValueError("endsAt must be greater than or equal to startsAt.")
        return v

    @field_validator("is_all_day", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator(
        "location",
        "description",
        "video_conference_link",
        "related_entity_type",
        "timezone",
        "recurrence_rule",
        "reminder_minutes",
        "related_entity_id",
        "recurrence_count",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        return None if _blank(v) else v

    @field_validator("color_hex", mode="before")
    @classmethod
    def _normalize_color(cls, v: Any) -> Optional[str]:
        return _parse_color_hex(v)

    @field_validator("recurrence_rule")
    @classmethod
    def _check_rule(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        rule = v.upper()
        if not rule.startswith("FREQ="):
            raise ValueError("recurrenceRule must be RFC5545 compliant.")
        if len(rule) > MAX_RULE_LENGTH:
            raise ValueError(f"recurrenceRule must be {MAX_RULE_LENGTH} characters or fewer.")
        return rule

    def build_recurrence(self) -> Optional[RecurrenceSpec]:
        """Recurrence from the structured request or the raw rule fields.

        Raises:
            InvalidRecurrence: When a structured recurrence request is malformed
        """
        if self.recurrence is not None and "frequency" in self.recurrence:
            return _codec.encode(self.recurrence).to_spec()
        if self.recurrence_rule is None:
            return None
        return RecurrenceSpec(
            rule=self.recurrence_rule,
            until=self.recurrence_ends_at,
            count=self.recurrence_count,
            summary=_codec.summarize(_codec.decode(self.recurrence_rule)),
        )

    def to_fields(self) -> dict[str, Any]:
        fields = self.model_dump(exclude={"recurrence", "recurrence_rule", "recurrence_ends_at", "recurrence_count"})
        fields["recurrence"] = self.build_recurrence()
        return fields


class FocusSessionPayload(_PayloadModel):
    """Focus session create/update payload.

    ``durationMinutes`` is derived from the session bounds when absent; a zero
    result is stored as None.
    """

    messages: ClassVar[dict[str, str]] = {
        "focusType": "focusType is invalid.",
        "startedAt": "startedAt is required.",
        "durationMinutes": "durationMinutes must be zero or a positive integer.",
        "completed": "completed must be true or false.",
    }

    focus_type: FocusType = FocusType.DEEP_WORK
    started_at: datetime.datetime
    ended_at: Optional[datetime.datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    completed: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator("focus_type", mode="before")
    @classmethod
    def _blank_to_default(cls, v: Any) -> Any:
        return FocusType.DEEP_WORK if _blank(v) else v

    @field_validator("started_at", mode="before")
    @classmethod
    def _parse_start(cls, v: Any) -> datetime.datetime:
        if _blank(v):
            raise ValueError("startedAt is required.")
        return _parse_optional_instant(v, "startedAt")

    @field_validator("ended_at", mode="before")
    @classmethod
    def _parse_end(cls, v: Any) -> Optional[datetime.datetime]:
        return _parse_optional_instant(v, "endedAt")

    @field_validator("duration_minutes", "notes", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        return None if _blank(v) else v

    @model_validator(mode="after")
    def _derive_duration(self) -> FocusSessionPayload:
        if self.duration_minutes is None and self.ended_at is not None:
            elapsed = max(0, round((self.ended_at - self.started_at).total_seconds() / 60))
            self.duration_minutes = elapsed or None
        return self


class SettingsPayload(_PayloadModel):
    """User calendar settings payload; absent fields take the defaults."""

    messages: ClassVar[dict[str, str]] = {
        "weekStart": "weekStart must be between 0 (Sunday) and 6 (Saturday).",
        "workStartMinutes": f"workStartMinutes must be between 0 and {MINUTES_PER_DAY - 1}.",
        "workEndMinutes": f"workEndMinutes must be between 0 and {MINUTES_PER_DAY - 1}.",
        "defaultReminderMinutes": f"defaultReminderMinutes must be between 0 and {MAX_REMINDER_MINUTES} minutes.",
        "defaultView": "defaultView is invalid.",
        "autoFocusBlocks": "autoFocusBlocks must be true or false.",
        "shareAvailability": "shareAvailability must be true or false.",
    }

    timezone: Optional[str] = None
    week_start: Optional[int] = Field(None, ge=0, le=6)
    work_start_minutes: Optional[int] = Field(None, ge=0, le=MINUTES_PER_DAY - 1)
    work_end_minutes: Optional[int] = Field(None, ge=0, le=MINUTES_PER_DAY - 1)
    default_reminder_minutes: Optional[int] = Field(None, ge=0, le=MAX_REMINDER_MINUTES)
    default_view: CalendarView = _SETTINGS_DEFAULTS.default_view
    auto_focus_blocks: Optional[bool] = None
    share_availability: Optional[bool] = None
    color_hex: Optional[str] = None

    @field_validator(
        "timezone", "week_start", "work_start_minutes", "work_end_minutes", "default_reminder_minutes", mode="before"
    )
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        return None if _blank(v) else v

    @field_validator("default_view", mode="before")
    @classmethod
    def _blank_to_default(cls, v: Any) -> Any:
        return _SETTINGS_DEFAULTS.default_view if _blank(v) else v

    @field_validator("work_end_minutes")
    @classmethod
    def _end_after_start(cls, v: Optional[int], info: ValidationInfo) -> Optional[int]:
        work_start = info.data.get("work_start_minutes")
        if work_start is None and v is None:
            return None
        start = work_start if work_start is not None else _SETTINGS_DEFAULTS.work_start_minutes
        end = v if v is not None else _SETTINGS_DEFAULTS.work_end_minutes
        if end <= start:
            raise ValueError("workEndMinutes must be greater than workStartMinutes.")
        return v

    @field_validator("color_hex", mode="before")
    @classmethod
    def _normalize_color(cls, v: Any) -> Optional[str]:
        return _parse_color_hex(v)

    def to_fields(self) -> dict[str, Any]:
        defaults = _SETTINGS_DEFAULTS

        def _or_default(value: Any, default: Any) -> Any:
            return default if value is None else value

        return {
            "timezone": self.timezone or defaults.timezone,
            "week_start": _or_default(self.week_start, defaults.week_start),
            "work_start_minutes": _or_default(self.work_start_minutes, defaults.work_start_minutes),
            "work_end_minutes": _or_default(self.work_end_minutes, defaults.work_end_minutes),
            "default_view": self.default_view,
            "default_reminder_minutes": _or_default(self.default_reminder_minutes, defaults.default_reminder_minutes),
            "auto_focus_blocks": _or_default(self.auto_focus_blocks, defaults.auto_focus_blocks),
            "share_availability": _or_default(self.share_availability, defaults.share_availability),
            "color_hex": self.color_hex,
        }


def _api_field(model: type[_PayloadModel], loc: tuple[Any, ...]) -> str:
    if not loc:
        return "body"
    name = str(loc[0])
    field = model.model_fields.get(name)
    if field is not None and field.alias:
        return field.alias
    return name


def validate_payload(model: type[PayloadT], data: Mapping[str, Any]) -> PayloadT:
    """Validate ``data`` against ``model``, reporting the first failure by API field name.

    Raises:
        InvalidEventPayload: Carrying the camelCase field and a readable message
    """
    if not isinstance(data, Mapping):
        raise InvalidEventPayload("body", "Request body must be a JSON object.")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = _api_field(model, error["loc"])
        if error["type"] == "value_error":
            message = str(error["ctx"]["error"])
        else:
            message = model.messages.get(field, f"{field} is invalid.")
        raise InvalidEventPayload(field, message) from e


def normalize_color_hex(value: Any) -> Optional[str]:
    """Return ``#RRGGBB`` or ``#RRGGBBAA`` upper-cased, or None for blank input."""
    try:
        return _parse_color_hex(value)
    except ValueError as e:
        raise InvalidEventPayload("colorHex", str(e)) from e


def normalize_event_payload(payload: Mapping[str, Any], existing: Optional[CalendarEvent] = None) -> dict[str, Any]:
    """Validate an event payload, merged over ``existing`` for updates.

    Args:
        payload: Event fields (camelCase or snake_case keys)
        existing: Stored event whose values fill fields absent from payload

    Returns:
        Mapping of CalendarEvent field names to normalized values

    Raises:
        InvalidEventPayload: On missing title, bad dates, enum or range violations
        InvalidRecurrence: When a structured recurrence request is malformed
    """
    if not isinstance(payload, Mapping):
        raise InvalidEventPayload("body", "Request body must be a JSON object.")
    changes = _camel_keys(payload)
    data = {**existing.to_api_dict(), **changes} if existing is not None else changes
    if existing is not None and "recurrence" not in changes and "recurrenceRule" in changes:
        # A raw rule in the update replaces the stored recurrence
        data.pop("recurrence", None)

    return validate_payload(EventPayload, data).to_fields()


def normalize_focus_session_payload(
    payload: Mapping[str, Any], existing: Optional[FocusSession] = None
) -> dict[str, Any]:
    """Validate a focus session payload, merged over ``existing`` for updates.

    ``completed`` defaults to whether the session ended; an explicit flag wins.
    """
    if not isinstance(payload, Mapping):
        raise InvalidEventPayload("body", "Request body must be a JSON object.")
    changes = _camel_keys(payload)
    data = {**existing.to_api_dict(), **changes} if existing is not None else dict(changes)
    # Only the payload itself can set the flag
    data.pop("completed", None)
    if "completed" in changes:
        data["completed"] = changes["completed"]
    if existing is not None and ("startedAt" in changes or "endedAt" in changes) and "durationMinutes" not in changes:
        # Stored duration is stale once the bounds change
        data.pop("durationMinutes", None)

    session = validate_payload(FocusSessionPayload, data)
    completed = session.completed
    if completed is None:
        completed = session.ended_at is not None or (existing is not None and existing.completed)
    return {
        "focus_type": session.focus_type,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "duration_minutes": session.duration_minutes,
        "completed": completed,
        "notes": session.notes,
    }


def normalize_settings_payload(payload: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Validate a settings payload; absent fields take the defaults."""
    payload = payload or {}
    if not isinstance(payload, Mapping):
        raise InvalidEventPayload("body", "Request body must be a JSON object.")
    return validate_payload(SettingsPayload, _camel_keys(payload)).to_fields()


def clamp_snapshot_limit(limit: Any) -> int:
    """Snapshot page size: 1..100, with 10 for missing or non-numeric input."""
    try:
        number = int(limit)
    except (TypeError, ValueError):
        number = 0
    return min(max(number or DEFAULT_SNAPSHOT_LIMIT, 1), MAX_SNAPSHOT_LIMIT)


def normalize_snapshot_provider(provider: Any) -> Optional[str]:
    return None if _blank(provider) else str(provider).strip().lower()


def normalize_availability_snapshot(
    user_id: Optional[str],
    provider: Any,
    *,
    availability: Any = None,
    metadata: Any = None,
    synced_at: Any = None,
    now: Optional[datetime.datetime] = None,
) -> AvailabilitySnapshot:
    """Build a snapshot to persist; ``synced_at`` defaults to ``now``.

    Non-object ``availability`` or ``metadata`` values are stored as None.

    Raises:
        InvalidEventPayload: If user_id or provider is blank, or synced_at is not an instant
    """
    if _blank(user_id):
        raise InvalidEventPayload("userId", "userId is required to record availability.")
    normalized_provider = normalize_snapshot_provider(provider)
    if normalized_provider is None:
        raise InvalidEventPayload("provider", "provider is required to record availability.")

    if _blank(synced_at):
        synced = now if now is not None else now_utc()
    else:
        try:
            synced = parse_instant(synced_at)
        except ValueError as e:
            raise InvalidEventPayload("syncedAt", "syncedAt must be a valid ISO-8601 datetime.") from e

    return AvailabilitySnapshot(
        user_id=user_id,
        provider=normalized_provider,
        synced_at=synced,
        availability=dict(availability) if isinstance(availability, Mapping) else None,
        metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
    )
