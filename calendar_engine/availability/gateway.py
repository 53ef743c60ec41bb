"""Fetches one integration's busy windows and clips them to a query window."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Optional

import httpx

from ..core.exceptions import IcsParseError, IntegrationFetchFailure
from ..core.http_client import fetch_text
from ..core.timezone_utils import try_parse_instant
from ..ics.codec import IcsCodec
from ..models import BusyWindow, CalendarIntegration, TimeWindow
from .sources import BusyWindowSource, ExplicitWindows, IcsBlob, NoSource, RecurringTemplate, resolve_source

logger = logging.getLogger(__name__)

FetchText = Callable[..., Awaitable[str]]


def _entry_to_window(entry: Any, provider: str) -> Optional[BusyWindow]:
    """Convert a raw ``{start, end, title}`` mapping; None when malformed."""
    if not isinstance(entry, Mapping):
        return None
    start = try_parse_instant(entry.get("start"))
    end = try_parse_instant(entry.get("end"))
    if start is None or end is None or end <= start:
        return None
    title = entry.get("title") or entry.get("summary") or entry.get("label")
    return BusyWindow(provider=provider, start=start, end=end, title=str(title) if title else None)


def clip_windows(entries: Iterable[Any], window: TimeWindow, provider: str) -> list[BusyWindow]:
    """Normalize raw entries and clip them to ``window``.

    Windows entirely outside the query window are discarded; partial overlaps
    are trimmed to the window boundary. Malformed entries are dropped.
    """
    clipped: list[BusyWindow] = []
    dropped = 0
    for entry in entries:
        busy = _entry_to_window(entry, provider)
        if busy is None:
            dropped += 1
            continue
        if busy.end <= window.start or busy.start >= window.end:
            continue
        if busy.start < window.start or busy.end > window.end:
            busy = busy.model_copy(
                update={"start": max(busy.start, window.start), "end": min(busy.end, window.end)}
            )
        clipped.append(busy)

    if dropped:
        logger.debug("Dropped %d malformed busy entries for provider %s", dropped, provider)
    return clipped


class AvailabilityGateway:
    """Normalizes a single integration's busy data to clipped BusyWindows."""

    def __init__(
        self,
        codec: Optional[IcsCodec] = None,
        fetch: FetchText = fetch_text,
        http_timeout_seconds: Optional[float] = None,
    ):
        """Initialize gateway.

        Args:
            codec: ICS codec used for ICS-sourced integrations
            fetch: Coroutine returning the body of a URL (defaults to the shared httpx client)
            http_timeout_seconds: Per-request timeout for feed downloads
        """
        self.codec = codec or IcsCodec()
        self.fetch = fetch
        self.http_timeout_seconds = http_timeout_seconds

    async def fetch_busy_windows(self, integration: CalendarIntegration, window: TimeWindow) -> list[BusyWindow]:
        """Return the integration's busy windows clipped to ``window``.

        Raises:
            IntegrationFetchFailure: When ICS content is unusable or cannot be downloaded
        """
        source = resolve_source(integration.provider, integration.metadata)
        entries = await self._load_entries(source, integration)
        return clip_windows(entries, window, integration.provider)

    async def _load_entries(self, source: BusyWindowSource, integration: CalendarIntegration) -> list[Any]:
        if isinstance(source, ExplicitWindows):
            return list(source.entries)
        if isinstance(source, RecurringTemplate):
            return list(source.slots)
        if isinstance(source, IcsBlob):
            text = source.text if source.text is not None else await self._download(source.url or "", integration)
            try:
                return self.codec.parse_busy_windows(text)
            except IcsParseError as e:
                raise IntegrationFetchFailure(
                    f"Invalid ICS data: {e}", provider=integration.provider, integration_id=integration.id
                ) from e
        if isinstance(source, NoSource):
            return []
        raise TypeError(f"Unknown busy window source: {source!r}")

    async def _download(self, url: str, integration: CalendarIntegration) -> str:
        logger.debug("Downloading ICS feed for integration %s (%s)", integration.id, integration.provider)
        try:
            return await self.fetch(url, timeout_seconds=self.http_timeout_seconds)
        except httpx.HTTPError as e:
            raise IntegrationFetchFailure(
                f"Failed to download ICS feed: {e}", provider=integration.provider, integration_id=integration.id
            ) from e
