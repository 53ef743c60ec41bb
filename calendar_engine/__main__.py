"""Command-line entry for calendar_engine."""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from . import run_server


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calendar_engine CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calendar_engine",
        description="Calendar Engine - recurrence, availability and ICS export API server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m calendar_engine                          # Start server on 127.0.0.1:8080
  python -m calendar_engine --port 3000              # Start server on port 3000
  python -m calendar_engine --seed data/seed.json    # Preload the in-memory store
        """,
    )

    parser.add_argument(
        "--host",
        metavar="HOST",
        help="Interface to bind (default: 127.0.0.1, or from CALENDAR_ENGINE_HOST env var)",
    )
    parser.add_argument(
        "--port",
        type=int,
        metavar="PORT",
        help="Port number for the web server (default: 8080, or from CALENDAR_ENGINE_PORT env var)",
    )
    parser.add_argument(
        "--seed",
        metavar="FILE",
        help="JSON seed file with events, focusSessions, integrations and settings",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging for calendar_engine modules",
    )

    return parser


def main() -> NoReturn:
    """Run the calendar_engine CLI."""
    parser = _create_parser()
    args = parser.parse_args()

    try:
        run_server(args)
    except (OSError, ValueError) as exc:
        print(f"calendar_engine failed to start: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
