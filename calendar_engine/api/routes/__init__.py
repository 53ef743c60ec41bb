"""Route modules for the calendar engine server."""

from .calendar_routes import register_calendar_routes
from .health_routes import register_health_routes

__all__ = [
    "register_calendar_routes",
    "register_health_routes",
]
