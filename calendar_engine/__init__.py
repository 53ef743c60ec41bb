"""calendar_engine - recurrence expansion, availability aggregation and ICS export.

Keeps top-level imports light so the package can be inspected without pulling
in the server stack.
"""

__version__ = "0.1.0"

from typing import Optional


def run_server(args: Optional[object] = None) -> None:
    """Start the calendar engine API server.

    Configuration is loaded from ``.env`` and ``CALENDAR_ENGINE_*`` environment
    variables, then command line arguments (``--host``, ``--port``, ``--seed``,
    ``--debug``) are applied on top.

    Args:
        args: Optional parsed command line namespace
    """
    import logging

    from .api.server import start_server
    from .core.config_manager import ConfigManager
    from .core.engine_logging import configure_logging

    config = ConfigManager().load_full_config()

    if args is not None:
        host = getattr(args, "host", None)
        if host:
            config.server_host = host
        port = getattr(args, "port", None)
        if port is not None:
            config.server_port = int(port)
        seed = getattr(args, "seed", None)
        if seed:
            config.seed_file = seed
        if getattr(args, "debug", False):
            config.debug = True

    configure_logging(debug_mode=config.debug)
    logging.getLogger(__name__).debug("Resolved configuration: %s", config)

    start_server(config)
