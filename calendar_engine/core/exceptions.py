"""Exception hierarchy for the calendar engine.

Validation errors carry the name of the offending field so the HTTP layer can
return a message that points at it. Integration failures never leave the
aggregator; they are converted into a ``sync_error`` on the integration.
"""

from __future__ import annotations

from typing import Optional


class CalendarEngineError(Exception):
    """Base exception for all calendar engine errors."""


class ValidationFailure(CalendarEngineError):
    """Caller input failed validation.

    Should result in HTTP 400 Bad Request response.
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Return the JSON error body used by the API layer."""
        return {"error": self.message, "field": self.field}


class InvalidRecurrence(ValidationFailure):
    """Recurrence request is malformed.

    Raised when:
    - frequency is not DAILY/WEEKLY/MONTHLY
    - byWeekday was supplied but contains no valid weekday code
    - count or interval is not a positive integer
    - until cannot be parsed as an instant
    """


class InvalidEventPayload(ValidationFailure):
    """Event, focus session or settings payload is malformed.

    Raised when:
    - title is missing or blank
    - endsAt is before startsAt
    - colorHex is not #RRGGBB or #RRGGBBAA
    - reminder or settings values are out of range
    """


class IntegrationFetchFailure(CalendarEngineError):
    """Busy windows for a single integration could not be fetched.

    Caught by the aggregator and recorded as that integration's sync error.
    """

    def __init__(self, message: str, provider: Optional[str] = None, integration_id: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.integration_id = integration_id


class IcsParseError(CalendarEngineError):
    """ICS document is structurally unusable (no VCALENDAR, unbalanced VEVENT)."""


class IcsParseSkip(CalendarEngineError):
    """A VEVENT block lacks DTSTART or DTEND and is dropped by the parser."""


class NotFound(CalendarEngineError):
    """Lookup by id and owner failed.

    Should result in HTTP 404 Not Found response.
    """

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} not found.")
        self.entity = entity
        self.entity_id = entity_id
