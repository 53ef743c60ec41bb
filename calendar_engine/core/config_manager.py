"""Configuration management for the calendar engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "CALENDAR_ENGINE_"

DEFAULT_PRODID = "-//Calendar Engine//Schedule Export//EN"


@dataclass
class EngineConfig:
    """Runtime settings for expansion, availability fetching and the API server.

    Consolidates all engine settings with explicit defaults.
    """

    # Expansion cache
    cache_ttl_seconds: int = 300
    cache_capacity: int = 500

    # Recurrence expansion
    expansion_limit: int = 50
    default_window_months: int = 3

    # Availability fetching
    fetch_concurrency: int = 4
    fetch_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 15.0

    # ICS export
    ics_prodid: str = DEFAULT_PRODID

    # Server
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    seed_file: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> EngineConfig:
        """Build a config from a mapping, ignoring unknown keys.

        Args:
            values: Mapping of field name to value

        Returns:
            EngineConfig with values from the mapping or defaults
        """
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})


# env suffix -> (field name, converter)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "CACHE_TTL_SECONDS": ("cache_ttl_seconds", int),
    "CACHE_CAPACITY": ("cache_capacity", int),
    "EXPANSION_LIMIT": ("expansion_limit", int),
    "DEFAULT_WINDOW_MONTHS": ("default_window_months", int),
    "FETCH_CONCURRENCY": ("fetch_concurrency", int),
    "FETCH_TIMEOUT_SECONDS": ("fetch_timeout_seconds", float),
    "HTTP_TIMEOUT_SECONDS": ("http_timeout_seconds", float),
    "ICS_PRODID": ("ics_prodid", str),
    "HOST": ("server_host", str),
    "PORT": ("server_port", int),
    "SEED_FILE": ("seed_file", str),
}


class ConfigManager:
    """Manages engine configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load .env file and set environment variables.

        Only sets variables that are not already in the environment.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        set_keys = []

        try:
            content = self.env_file_path.read_text(encoding="utf-8")
        except OSError:
            logger.debug("Failed to read .env file (continuing): %s", self.env_file_path, exc_info=True)
            return []

        for raw_line in content.splitlines():
            line = raw_line.strip()

            if not line or line.startswith("#") or "=" not in line:
                continue

            key, val = line.split("=", 1)
            key = key.strip()
            val = val.strip().strip('"').strip("'")

            if key and key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))

        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build configuration dictionary from CALENDAR_ENGINE_* environment variables.

        Values that fail conversion are logged and ignored so the default applies.

        Returns:
            Mapping of EngineConfig field names to converted values
        """
        cfg: dict[str, Any] = {}

        for suffix, (field_name, converter) in _ENV_FIELDS.items():
            raw = os.environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                value = converter(raw)
            except ValueError:
                logger.warning("Invalid %s%s=%r; ignoring", ENV_PREFIX, suffix, raw)
                continue
            if isinstance(value, (int, float)) and value <= 0:
                logger.warning("Non-positive %s%s=%r; ignoring", ENV_PREFIX, suffix, raw)
                continue
            cfg[field_name] = value

        debug = os.environ.get(ENV_PREFIX + "DEBUG", "").lower()
        if debug in ("1", "true", "yes", "on"):
            cfg["debug"] = True

        return cfg

    def load_full_config(self) -> EngineConfig:
        """Load .env file and build configuration from environment.

        This is the main entry point for loading configuration.

        Returns:
            EngineConfig instance
        """
        self.load_env_file()
        return EngineConfig.from_mapping(self.build_config_from_env())
