"""Shared HTTP client manager for fetching remote calendar feeds.

Keeps one pooled ``httpx.AsyncClient`` per client id so integration fetches
reuse connections across aggregation cycles.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

_shared_clients: dict[str, httpx.AsyncClient] = {}
_client_health: dict[str, dict[str, float]] = {}
_client_lock = asyncio.Lock()

_DEFAULT_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
)

_DEFAULT_TIMEOUT = httpx.Timeout(
    connect=10.0,
    read=30.0,
    write=10.0,
    pool=30.0,
)

DEFAULT_HEADERS: dict[str, str] = {
    "User-Agent": "calendar-engine/1.0",
    "Accept": "text/calendar, text/plain, application/octet-stream, */*",
}

# Recreate client after 3 consecutive errors within 5 minutes
HEALTH_ERROR_THRESHOLD = 3
HEALTH_TIMEOUT_SECONDS = 300


async def get_shared_client(
    client_id: str = "default",
    limits: Optional[httpx.Limits] = None,
    timeout: Optional[httpx.Timeout] = None,
) -> httpx.AsyncClient:
    """Get or create a shared HTTP client with connection pooling.

    Args:
        client_id: Identifier for the client (allows multiple clients if needed)
        limits: Custom connection limits
        timeout: Custom timeout configuration

    Returns:
        Shared httpx.AsyncClient
    """
    async with _client_lock:
        await _recreate_client_if_unhealthy(client_id)

        if client_id not in _shared_clients or _shared_clients[client_id].is_closed:
            effective_limits = limits or _DEFAULT_LIMITS
            _shared_clients[client_id] = httpx.AsyncClient(
                limits=effective_limits,
                timeout=timeout or _DEFAULT_TIMEOUT,
                follow_redirects=True,
                headers=DEFAULT_HEADERS,
            )
            _client_health[client_id] = {
                "error_count": 0,
                "last_error_time": 0,
                "created_time": time.time(),
            }
            logger.debug(
                "Created shared HTTP client '%s' (max_connections=%s)",
                client_id,
                effective_limits.max_connections,
            )

        return _shared_clients[client_id]


async def close_all_clients() -> None:
    """Close all shared HTTP clients and clean up resources.

    This should be called during application shutdown.
    """
    async with _client_lock:
        for client_id, client in _shared_clients.items():
            if not client.is_closed:
                await client.aclose()
                logger.debug("Closed shared HTTP client '%s'", client_id)

        _shared_clients.clear()
        _client_health.clear()


async def record_client_error(client_id: str = "default") -> None:
    """Record an error for health tracking.

    Args:
        client_id: Identifier of the client that encountered an error
    """
    async with _client_lock:
        health = _client_health.setdefault(
            client_id, {"error_count": 0, "last_error_time": 0, "created_time": time.time()}
        )
        health["error_count"] += 1
        health["last_error_time"] = time.time()


async def record_client_success(client_id: str = "default") -> None:
    """Record a successful operation for health tracking."""
    async with _client_lock:
        if client_id in _client_health:
            _client_health[client_id]["error_count"] = 0


async def _recreate_client_if_unhealthy(client_id: str) -> None:
    """Drop the client so it is recreated after repeated recent errors."""
    health = _client_health.get(client_id)
    if health is None:
        return

    should_recreate = (
        health["error_count"] >= HEALTH_ERROR_THRESHOLD
        and (time.time() - health["last_error_time"]) < HEALTH_TIMEOUT_SECONDS
    )

    if should_recreate and client_id in _shared_clients:
        logger.warning(
            "Recreating unhealthy client '%s' after %d errors",
            client_id,
            health["error_count"],
        )
        old_client = _shared_clients.pop(client_id)
        del _client_health[client_id]
        if not old_client.is_closed:
            await old_client.aclose()


async def fetch_text(url: str, timeout_seconds: Optional[float] = None, client_id: str = "calendar-feeds") -> str:
    """GET a URL and return its decoded body.

    Args:
        url: Feed URL (http/https; webcal:// is rewritten to https://)
        timeout_seconds: Optional per-request timeout override
        client_id: Shared client identifier

    Returns:
        Response body as text

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status
    """
    if url.startswith("webcal://"):
        url = "https://" + url[len("webcal://") :]

    client = await get_shared_client(client_id)
    request_kwargs: dict[str, Any] = {}
    if timeout_seconds is not None:
        request_kwargs["timeout"] = httpx.Timeout(timeout_seconds)
    try:
        response = await client.get(url, **request_kwargs)
        response.raise_for_status()
    except httpx.HTTPError:
        await record_client_error(client_id)
        raise

    await record_client_success(client_id)
    return response.text
