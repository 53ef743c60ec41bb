"""Time helpers for the calendar engine: current time, instant parsing, stamps."""

from __future__ import annotations

import datetime
import logging
import os
import re
from typing import Any, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

TEST_TIME_ENV = "CALENDAR_ENGINE_TEST_TIME"

# Basic-format ICS stamps: 20250106T090000Z, 20250106T090000, 20250106
_ICS_STAMP_RE = re.compile(r"^(\d{8})(?:T(\d{6}))?(Z)?$")


class TimeProvider:
    """Provides current time with test time override support."""

    def now_utc(self) -> datetime.datetime:
        """Return current UTC time with tzinfo.

        Can be overridden for testing via CALENDAR_ENGINE_TEST_TIME environment variable.
        Format: ISO 8601 datetime string (e.g., "2025-01-06T09:00:00Z")

        Returns:
            Current time in UTC with timezone info
        """
        test_time = os.environ.get(TEST_TIME_ENV)
        if test_time:
            try:
                return to_utc(date_parser.isoparse(test_time))
            except (ValueError, OverflowError) as e:
                logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)

        return datetime.datetime.now(datetime.UTC)


_time_provider = TimeProvider()


def now_utc() -> datetime.datetime:
    """Get current UTC time (convenience function).

    Returns:
        Current time in UTC
    """
    return _time_provider.now_utc()


def to_utc(dt: datetime.datetime) -> datetime.datetime:
    """Normalize a datetime to aware UTC; naive values are assumed to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.UTC)
    return dt.astimezone(datetime.UTC)


def parse_instant(value: Any) -> datetime.datetime:
    """Parse an instant into an aware UTC datetime.

    Accepts datetime/date objects, ISO-8601 strings (with ``Z``, an offset or
    naive) and basic-format ICS stamps (``YYYYMMDDTHHMMSSZ``).

    Raises:
        ValueError: If the value cannot be interpreted as an instant
    """
    if isinstance(value, datetime.datetime):
        return to_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.UTC)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Not an instant: {value!r}")

    text = value.strip()
    match = _ICS_STAMP_RE.match(text)
    if match:
        date_part, time_part, _ = match.groups()
        fmt = "%Y%m%dT%H%M%S" if time_part else "%Y%m%d"
        raw = f"{date_part}T{time_part}" if time_part else date_part
        return datetime.datetime.strptime(raw, fmt).replace(tzinfo=datetime.UTC)

    try:
        return to_utc(date_parser.isoparse(text))
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Not an instant: {value!r}") from e


def try_parse_instant(value: Any) -> Optional[datetime.datetime]:
    """Like parse_instant but returns None instead of raising."""
    try:
        return parse_instant(value)
    except ValueError:
        return None


def format_ics_stamp(dt: datetime.datetime) -> str:
    """Format as a UTC basic-format stamp, e.g. ``20250106T090000Z``."""
    return to_utc(dt).strftime("%Y%m%dT%H%M%SZ")


def serialize_iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    """Serialize to ISO-8601 UTC with a ``Z`` suffix and millisecond precision."""
    if dt is None:
        return None
    utc = to_utc(dt)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def epoch_millis(dt: datetime.datetime) -> int:
    """Milliseconds since the Unix epoch for an instant."""
    utc = to_utc(dt)
    return int(utc.replace(microsecond=0).timestamp()) * 1000 + utc.microsecond // 1000
