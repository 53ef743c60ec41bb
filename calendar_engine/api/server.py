"""aiohttp server wiring for the calendar engine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from aiohttp import web

from ..core.config_manager import EngineConfig
from ..core.health_tracker import HealthTracker
from ..core.http_client import close_all_clients
from ..core.timezone_utils import now_utc
from ..domain.calendar_service import CalendarService
from ..domain.overview import CalendarOverviewOrchestrator
from ..domain.store import CalendarStore, InMemoryCalendarStore
from .middleware import correlation_id_middleware
from .routes import register_calendar_routes, register_health_routes

logger = logging.getLogger(__name__)


async def _on_cleanup(_app: web.Application) -> None:
    await close_all_clients()
    logger.debug("HTTP clients closed")


def create_app(
    store: CalendarStore,
    config: Optional[EngineConfig] = None,
    health_tracker: Optional[HealthTracker] = None,
    orchestrator: Optional[CalendarOverviewOrchestrator] = None,
    time_provider: Callable[[], datetime] = now_utc,
) -> web.Application:
    """Build the web application with every route registered.

    Args:
        store: Calendar store shared by all handlers
        config: Engine configuration (defaults when omitted)
        health_tracker: Health counters; a fresh tracker when omitted
        orchestrator: Overview orchestrator; built from ``config`` when omitted
        time_provider: Time provider callable for the health route
    """
    config = config or EngineConfig()
    health_tracker = health_tracker or HealthTracker()
    if orchestrator is None:
        orchestrator = CalendarOverviewOrchestrator.from_config(store, config, health_tracker)

    app = web.Application(middlewares=[correlation_id_middleware])
    service = CalendarService(store, time_provider=orchestrator.time_provider)
    register_calendar_routes(app, service, orchestrator)
    register_health_routes(app, health_tracker, time_provider, orchestrator.expansion_cache)
    app.on_cleanup.append(_on_cleanup)
    return app


def build_store(config: EngineConfig) -> InMemoryCalendarStore:
    """In-memory store, seeded from ``config.seed_file`` when set."""
    if config.seed_file:
        logger.info("Loading seed data from %s", config.seed_file)
        return InMemoryCalendarStore.from_seed_file(config.seed_file)
    return InMemoryCalendarStore()


async def serve(config: EngineConfig, external_stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the server until signalled to stop.

    Args:
        config: Engine configuration
        external_stop_event: Optional event to signal shutdown. When provided,
            signal handlers are not registered (caller owns signal handling).
    """
    stop_event = external_stop_event or asyncio.Event()
    app = create_app(build_store(config), config)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=config.server_host, port=config.server_port)
    try:
        await site.start()
    except OSError:
        logger.exception("Failed to start server on %s:%d", config.server_host, config.server_port)
        await runner.cleanup()
        raise

    logger.info("Server started on %s:%d", config.server_host, config.server_port)

    if external_stop_event is None:

        def _on_signal() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_signal)

    try:
        await stop_event.wait()
        logger.info("Stop event received, shutting down")
    finally:
        await runner.cleanup()
        logger.info("Server stopped")


def start_server(config: EngineConfig) -> None:
    """Blocking entry point used by the CLI."""
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
