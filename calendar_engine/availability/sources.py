"""Resolution of integration metadata into a single busy-window source.

Integration metadata is opaque and comes in several shapes. It is classified
once, in priority order, into one of the source types below so the gateway
never inspects fields ad hoc.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

ICS_PROVIDERS = frozenset({"ics", "ical", "icloud", "webcal"})


@dataclass(frozen=True)
class ExplicitWindows:
    """Busy windows stored directly in metadata as ``{start, end, title}`` objects."""

    entries: tuple[Any, ...]


@dataclass(frozen=True)
class IcsBlob:
    """ICS text stored in metadata, or a feed URL to download it from."""

    text: Optional[Any] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class RecurringTemplate:
    """Recurring slot templates, used as already-resolved windows."""

    slots: tuple[Any, ...]


@dataclass(frozen=True)
class NoSource:
    """Integration carries no busy data."""


BusyWindowSource = Union[ExplicitWindows, IcsBlob, RecurringTemplate, NoSource]


def _lookup(metadata: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value is not None:
            return value
    return None


def resolve_source(provider: Optional[str], metadata: Any) -> BusyWindowSource:
    """Classify integration metadata.

    Priority:
    1. ``busyWindows`` list
    2. ``icsText``/``icsUrl`` present (ICS providers may also use ``feedUrl``/``url``)
    3. ``recurringSlots`` list

    Args:
        provider: Integration provider name
        metadata: Integration metadata (non-mappings are treated as empty)

    Returns:
        The resolved source
    """
    if not isinstance(metadata, Mapping):
        metadata = {}

    explicit = _lookup(metadata, "busyWindows", "busy_windows")
    if isinstance(explicit, list) and explicit:
        return ExplicitWindows(tuple(explicit))

    ics_text = _lookup(metadata, "icsText", "ics_text", "ics")
    ics_url = _lookup(metadata, "icsUrl", "ics_url")
    if ics_url is None and (provider or "").lower() in ICS_PROVIDERS:
        # ICS providers may store the feed under a generic key
        ics_url = _lookup(metadata, "feedUrl", "url")
    if ics_text is not None or isinstance(ics_url, str):
        return IcsBlob(text=ics_text, url=ics_url if isinstance(ics_url, str) else None)

    slots = _lookup(metadata, "recurringSlots", "recurring_slots")
    if isinstance(slots, list) and slots:
        return RecurringTemplate(tuple(slots))

    return NoSource()
