"""Best-effort aggregation of busy windows across a user's integrations."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..core.exceptions import CalendarEngineError
from ..core.health_tracker import HealthTracker
from ..core.timezone_utils import now_utc, serialize_iso
from ..models import AvailabilitySnapshot, BusyWindow, CalendarIntegration, TimeWindow
from .gateway import AvailabilityGateway

logger = logging.getLogger(__name__)

DEFAULT_FETCH_CONCURRENCY = 4
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0


@dataclass
class IntegrationFetchResult:
    """Outcome of fetching one integration: its windows or the error that stopped it."""

    integration: CalendarIntegration
    windows: list[BusyWindow] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AggregationResult:
    """Merged windows plus the per-integration results they came from."""

    windows: list[BusyWindow]
    results: list[IntegrationFetchResult]

    @property
    def failed(self) -> list[IntegrationFetchResult]:
        return [r for r in self.results if not r.ok]


def describe_error(error: BaseException) -> str:
    """Human-readable sync error stored on the integration."""
    if isinstance(error, asyncio.TimeoutError):
        return "Timed out fetching availability"
    message = str(error)
    return message or type(error).__name__


def merge_windows(results: Sequence[IntegrationFetchResult]) -> list[BusyWindow]:
    """Union of successful results, deduplicated by (provider, start, end), sorted by start."""
    seen: set[tuple[str, datetime, datetime]] = set()
    merged: list[BusyWindow] = []
    for result in results:
        if not result.ok:
            continue
        for window in result.windows:
            if window.dedupe_key in seen:
                continue
            seen.add(window.dedupe_key)
            merged.append(window)
    merged.sort(key=lambda w: (w.start, w.end, w.provider))
    return merged


class AvailabilityAggregator:
    """Fetches every integration independently and merges what succeeded.

    A failing integration only gets its ``sync_error`` set; it never aborts
    the other fetches or the caller.
    """

    def __init__(
        self,
        gateway: Optional[AvailabilityGateway] = None,
        store: Any = None,
        fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        health_tracker: Optional[HealthTracker] = None,
        time_provider: Callable[[], datetime] = now_utc,
    ):
        """Initialize aggregator.

        Args:
            gateway: Gateway used to fetch each integration
            store: Optional CalendarStore; receives sync health and availability snapshots
            fetch_concurrency: Maximum concurrent integration fetches
            fetch_timeout_seconds: Timeout applied to each integration fetch
            health_tracker: Optional tracker for cycle/failure counters
            time_provider: Source of ``last_synced_at`` timestamps
        """
        self.gateway = gateway or AvailabilityGateway()
        self.store = store
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.health_tracker = health_tracker
        self.time_provider = time_provider
        # Entries vanish once no fetch holds or awaits the lock
        self._sync_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def aggregate(self, integrations: Sequence[CalendarIntegration], window: TimeWindow) -> AggregationResult:
        """Fetch busy windows for all integrations with bounded concurrency.

        Args:
            integrations: The user's integrations
            window: Query window every result is clipped to

        Returns:
            AggregationResult with merged windows and per-integration outcomes
        """
        if not integrations:
            return AggregationResult(windows=[], results=[])

        semaphore = asyncio.Semaphore(self.fetch_concurrency)
        tasks = [
            asyncio.create_task(self._fetch_one(semaphore, integration, window))
            for integration in integrations
        ]
        results = list(await asyncio.gather(*tasks))

        merged = merge_windows(results)
        failed = sum(1 for r in results if not r.ok)
        if self.health_tracker is not None:
            self.health_tracker.record_cycle(total=len(results), failed=failed)

        logger.debug(
            "Aggregated %d busy windows from %d integrations (%d failed)",
            len(merged),
            len(results),
            failed,
        )
        return AggregationResult(windows=merged, results=results)

    async def _fetch_one(
        self, semaphore: asyncio.Semaphore, integration: CalendarIntegration, window: TimeWindow
    ) -> IntegrationFetchResult:
        async with semaphore:
            try:
                windows = await asyncio.wait_for(
                    self.gateway.fetch_busy_windows(integration, window),
                    timeout=self.fetch_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:  # one integration must not fail the others
                logger.warning(
                    "Availability fetch failed for integration %s (%s): %s",
                    integration.id,
                    integration.provider,
                    describe_error(e),
                )
                result = IntegrationFetchResult(integration=integration, error=e)
            else:
                result = IntegrationFetchResult(integration=integration, windows=windows)

        await self._record_sync(result, window)
        return result

    async def _record_sync(self, result: IntegrationFetchResult, window: TimeWindow) -> None:
        """Update the integration's sync health; serialized per integration.

        A successful fetch is also recorded as an availability snapshot.
        """
        integration = result.integration
        lock_key = str(integration.id) if integration.id is not None else f"anon-{id(integration)}"
        lock = self._sync_locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._sync_locks[lock_key] = lock

        async with lock:
            synced_at = self.time_provider() if result.ok else None
            error = None if result.ok or result.error is None else describe_error(result.error)

            if result.ok:
                integration.last_synced_at = synced_at
                integration.sync_error = None
            else:
                integration.sync_error = error
                if self.health_tracker is not None:
                    self.health_tracker.record_integration_failure(integration.provider)

            if self.store is None or integration.id is None:
                return
            try:
                await self.store.record_integration_sync(
                    integration.user_id,
                    integration.id,
                    synced_at=synced_at,
                    error=error,
                )
            except CalendarEngineError as e:
                logger.warning("Could not persist sync state for integration %s: %s", integration.id, e)

            if result.ok and integration.user_id is not None and synced_at is not None:
                await self._record_snapshot(integration, result.windows, window, synced_at)

    async def _record_snapshot(
        self,
        integration: CalendarIntegration,
        windows: Sequence[BusyWindow],
        window: TimeWindow,
        synced_at: datetime,
    ) -> None:
        snapshot = AvailabilitySnapshot(
            user_id=integration.user_id,
            provider=integration.provider.strip().lower(),
            synced_at=synced_at,
            availability={
                "windowStart": serialize_iso(window.start),
                "windowEnd": serialize_iso(window.end),
                "busyWindows": [w.to_api_dict() for w in windows],
            },
            metadata={"integrationId": integration.id, "busyWindowCount": len(windows)},
        )
        try:
            await self.store.add_availability_snapshot(integration.user_id, snapshot)
        except CalendarEngineError as e:
            logger.warning("Could not record availability snapshot for integration %s: %s", integration.id, e)
