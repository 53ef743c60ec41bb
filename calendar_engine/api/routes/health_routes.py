"""Health check route."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from aiohttp import web

from ...core.health_tracker import HealthTracker
from ...core.timezone_utils import serialize_iso
from ...recurrence.expansion_cache import ExpansionCache

logger = logging.getLogger(__name__)


def register_health_routes(
    app: web.Application,
    health_tracker: HealthTracker,
    time_provider: Callable[[], datetime],
    expansion_cache: Optional[ExpansionCache] = None,
) -> None:
    """Register /api/health.

    Args:
        app: aiohttp web application
        health_tracker: Aggregation health counters
        time_provider: Time provider callable
        expansion_cache: Optional cache whose stats are included in the response
    """

    async def health_check(_request: web.Request) -> web.Response:
        """Health check endpoint for monitoring system status."""
        health_data = health_tracker.to_dict(serialize_iso(time_provider()) or "")
        if expansion_cache is not None:
            health_data["expansionCache"] = expansion_cache.get_stats()

        # Degraded integrations still serve overviews; only total failure is unhealthy
        http_status = 503 if health_data["status"] == "critical" else 200
        return web.json_response(health_data, status=http_status)

    app.router.add_get("/api/health", health_check)
