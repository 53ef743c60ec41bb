"""Calendar routes: overview, ICS exports, availability snapshots and per-user record CRUD."""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ...core.exceptions import NotFound, ValidationFailure
from ...domain.calendar_service import CalendarService
from ...domain.overview import CalendarOverviewOrchestrator, IcsExport

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_FALSE_VALUES = ("0", "false", "no", "off")


def _handle_errors(handler: Handler) -> Handler:
    """Map validation failures to 400 and missing records to 404."""

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except ValidationFailure as e:
            logger.debug("Rejected %s %s: %s (%s)", request.method, request.path, e.message, e.field)
            return web.json_response(e.to_dict(), status=400)
        except NotFound as e:
            return web.json_response({"error": str(e)}, status=404)

    return wrapper


async def _read_json(request: web.Request) -> dict[str, Any]:
    """Parse the request body as a JSON object or raise a 400-mapped failure."""
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationFailure("body", "Request body must be valid JSON.") from e
    if not isinstance(data, dict):
        raise ValidationFailure("body", "Request body must be a JSON object.")
    return data


def _ics_response(export: IcsExport, extra_headers: dict[str, str] | None = None) -> web.Response:
    headers = {"Content-Disposition": f'attachment; filename="{export.filename}"'}
    headers.update(extra_headers or {})
    return web.Response(text=export.body, content_type="text/calendar", charset="utf-8", headers=headers)


def register_calendar_routes(
    app: web.Application,
    service: CalendarService,
    orchestrator: CalendarOverviewOrchestrator,
) -> None:
    """Register calendar routes.

    Args:
        app: aiohttp web application
        service: CRUD service for events, focus sessions and settings
        orchestrator: Overview and ICS export orchestrator
    """
    base = "/api/users/{user_id}/calendar"

    @_handle_errors
    async def get_overview(request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        overview = await orchestrator.get_overview(
            user_id, request.query.get("from"), request.query.get("to")
        )
        return web.json_response(overview.to_api_dict())

    @_handle_errors
    async def export_event(request: web.Request) -> web.Response:
        export = await orchestrator.export_event_ics(request.match_info["user_id"], request.match_info["event_id"])
        return _ics_response(export)

    @_handle_errors
    async def export_schedule(request: web.Request) -> web.Response:
        include_availability = request.query.get("availability", "true").strip().lower() not in _FALSE_VALUES
        export = await orchestrator.export_schedule_ics(
            request.match_info["user_id"],
            request.query.get("from"),
            request.query.get("to"),
            include_availability=include_availability,
        )
        return _ics_response(
            export,
            {
                "X-Event-Count": str(export.event_count),
                "X-Availability-Count": str(export.availability_count),
            },
        )

    @_handle_errors
    async def create_event(request: web.Request) -> web.Response:
        event = await service.create_event(request.match_info["user_id"], await _read_json(request))
        return web.json_response(event.to_api_dict(), status=201)

    @_handle_errors
    async def update_event(request: web.Request) -> web.Response:
        event = await service.update_event(
            request.match_info["user_id"], request.match_info["event_id"], await _read_json(request)
        )
        return web.json_response(event.to_api_dict())

    @_handle_errors
    async def delete_event(request: web.Request) -> web.Response:
        await service.delete_event(request.match_info["user_id"], request.match_info["event_id"])
        return web.Response(status=204)

    @_handle_errors
    async def list_focus_sessions(request: web.Request) -> web.Response:
        sessions = await service.list_focus_sessions(request.match_info["user_id"])
        return web.json_response([s.to_api_dict() for s in sessions])

    @_handle_errors
    async def create_focus_session(request: web.Request) -> web.Response:
        session = await service.create_focus_session(request.match_info["user_id"], await _read_json(request))
        return web.json_response(session.to_api_dict(), status=201)

    @_handle_errors
    async def update_focus_session(request: web.Request) -> web.Response:
        session = await service.update_focus_session(
            request.match_info["user_id"], request.match_info["session_id"], await _read_json(request)
        )
        return web.json_response(session.to_api_dict())

    @_handle_errors
    async def delete_focus_session(request: web.Request) -> web.Response:
        await service.delete_focus_session(request.match_info["user_id"], request.match_info["session_id"])
        return web.Response(status=204)

    @_handle_errors
    async def get_settings(request: web.Request) -> web.Response:
        settings = await service.get_settings(request.match_info["user_id"])
        return web.json_response(settings.to_api_dict())

    @_handle_errors
    async def put_settings(request: web.Request) -> web.Response:
        settings = await service.update_settings(request.match_info["user_id"], await _read_json(request))
        return web.json_response(settings.to_api_dict())

    @_handle_errors
    async def list_availability_snapshots(request: web.Request) -> web.Response:
        snapshots = await service.list_availability_snapshots(
            request.match_info["user_id"],
            provider=request.query.get("provider"),
            limit=request.query.get("limit"),
        )
        return web.json_response([s.to_api_dict() for s in snapshots])

    @_handle_errors
    async def record_availability_snapshot(request: web.Request) -> web.Response:
        data = await _read_json(request)
        snapshot = await service.record_availability_snapshot(
            request.match_info["user_id"],
            data.get("provider"),
            availability=data.get("availability"),
            metadata=data.get("metadata"),
            synced_at=data.get("syncedAt"),
        )
        return web.json_response(snapshot.to_api_dict(), status=201)

    app.router.add_get(f"{base}/overview", get_overview)
    app.router.add_get(f"{base}/events/{{event_id}}.ics", export_event)
    app.router.add_get(f"{base}/schedule.ics", export_schedule)
    app.router.add_post(f"{base}/events", create_event)
    app.router.add_patch(f"{base}/events/{{event_id}}", update_event)
    app.router.add_delete(f"{base}/events/{{event_id}}", delete_event)
    app.router.add_get(f"{base}/focus-sessions", list_focus_sessions)
    app.router.add_post(f"{base}/focus-sessions", create_focus_session)
    app.router.add_patch(f"{base}/focus-sessions/{{session_id}}", update_focus_session)
    app.router.add_delete(f"{base}/focus-sessions/{{session_id}}", delete_focus_session)
    app.router.add_get(f"{base}/settings", get_settings)
    app.router.add_put(f"{base}/settings", put_settings)
    app.router.add_get(f"{base}/availability-snapshots", list_availability_snapshots)
    app.router.add_post(f"{base}/availability-snapshots", record_availability_snapshot)

    logger.debug("Calendar routes registered under %s", base)
