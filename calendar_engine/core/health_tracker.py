"""Health tracking for availability aggregation and the API server."""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class HealthStatus:
    """Health status information for the server."""

    status: str  # "ok", "degraded", or "critical"
    server_time_iso: str
    uptime_seconds: int
    pid: int
    aggregation_cycles: int
    last_cycle_age_seconds: Optional[int]
    integration_failures: dict[str, int] = field(default_factory=dict)


class HealthTracker:
    """Thread-safe counters for aggregation cycles and per-provider failures."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_time: float = time.time()
        self._cycles = 0
        self._last_cycle: Optional[float] = None
        self._last_cycle_failed = 0
        self._last_cycle_total = 0
        self._failures: dict[str, int] = {}

    def record_cycle(self, total: int, failed: int) -> None:
        """Record a completed aggregation cycle.

        Args:
            total: Number of integrations processed
            failed: Number of integrations whose fetch failed
        """
        with self._lock:
            self._cycles += 1
            self._last_cycle = time.time()
            self._last_cycle_total = total
            self._last_cycle_failed = failed

    def record_integration_failure(self, provider: str) -> None:
        """Count a fetch failure for a provider."""
        with self._lock:
            self._failures[provider] = self._failures.get(provider, 0) + 1

    def get_uptime_seconds(self) -> int:
        return int(time.time() - self._start_time)

    def get_last_cycle_age_seconds(self) -> Optional[int]:
        if self._last_cycle is None:
            return None
        return int(time.time() - self._last_cycle)

    def determine_overall_status(self) -> str:
        """Determine overall health status.

        Returns:
            "ok" when the last cycle had no failures, "critical" when every
            integration failed, "degraded" otherwise
        """
        with self._lock:
            if self._last_cycle is None or self._last_cycle_failed == 0:
                return "ok"
            if self._last_cycle_failed >= self._last_cycle_total:
                return "critical"
            return "degraded"

    def get_health_status(self, current_time_iso: str) -> HealthStatus:
        """Get comprehensive health status.

        Args:
            current_time_iso: Current time in ISO format
        """
        status = self.determine_overall_status()
        with self._lock:
            failures = dict(self._failures)
            cycles = self._cycles
        return HealthStatus(
            status=status,
            server_time_iso=current_time_iso,
            uptime_seconds=self.get_uptime_seconds(),
            pid=os.getpid(),
            aggregation_cycles=cycles,
            last_cycle_age_seconds=self.get_last_cycle_age_seconds(),
            integration_failures=failures,
        )

    def to_dict(self, current_time_iso: str) -> dict[str, Any]:
        health = self.get_health_status(current_time_iso)
        return {
            "status": health.status,
            "serverTime": health.server_time_iso,
            "uptimeSeconds": health.uptime_seconds,
            "pid": health.pid,
            "aggregationCycles": health.aggregation_cycles,
            "lastCycleAgeSeconds": health.last_cycle_age_seconds,
            "integrationFailures": health.integration_failures,
        }
