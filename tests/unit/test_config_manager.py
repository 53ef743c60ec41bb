"""Unit tests for calendar_engine.core.config_manager."""

import os

import pytest

from calendar_engine.core.config_manager import ConfigManager, EngineConfig

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def clean_engine_env(monkeypatch):
    """Run each test against a copy of the environment without CALENDAR_ENGINE_* keys."""
    environ = {k: v for k, v in os.environ.items() if not k.startswith("CALENDAR_ENGINE_")}
    monkeypatch.setattr(os, "environ", environ)


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()

        assert config.cache_ttl_seconds == 300
        assert config.cache_capacity == 500
        assert config.expansion_limit == 50
        assert config.default_window_months == 3
        assert config.fetch_timeout_seconds == 30.0
        assert config.server_port == 8080
        assert config.seed_file is None

    def test_from_mapping_ignores_unknown_keys(self):
        config = EngineConfig.from_mapping({"server_port": 9000, "colour_scheme": "dark"})

        assert config.server_port == 9000


class TestBuildConfigFromEnv:
    def test_reads_prefixed_variables(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CALENDAR_ENGINE_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("CALENDAR_ENGINE_FETCH_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("CALENDAR_ENGINE_HOST", "0.0.0.0")
        monkeypatch.setenv("CALENDAR_ENGINE_DEBUG", "true")

        cfg = ConfigManager(tmp_path / ".env").build_config_from_env()

        assert cfg == {
            "cache_ttl_seconds": 60,
            "fetch_timeout_seconds": 2.5,
            "server_host": "0.0.0.0",
            "debug": True,
        }

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", ""])
    def test_invalid_or_non_positive_values_ignored(self, monkeypatch, tmp_path, raw):
        monkeypatch.setenv("CALENDAR_ENGINE_PORT", raw)

        config = ConfigManager(tmp_path / ".env").load_full_config()

        assert config.server_port == 8080


class TestEnvFile:
    def test_env_file_supplies_defaults_without_overriding(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# engine settings\n"
            "CALENDAR_ENGINE_PORT=9090\n"
            'CALENDAR_ENGINE_ICS_PRODID="-//Acme//Cal//EN"\n'
            "CALENDAR_ENGINE_EXPANSION_LIMIT=25\n"
            "not a setting\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("CALENDAR_ENGINE_EXPANSION_LIMIT", "10")

        manager = ConfigManager(env_file)
        loaded = manager.load_env_file()
        config = EngineConfig.from_mapping(manager.build_config_from_env())

        assert sorted(loaded) == ["CALENDAR_ENGINE_ICS_PRODID", "CALENDAR_ENGINE_PORT"]
        assert config.server_port == 9090
        assert config.ics_prodid == "-//Acme//Cal//EN"
        assert config.expansion_limit == 10

    def test_missing_env_file(self, tmp_path):
        assert ConfigManager(tmp_path / "missing.env").load_env_file() == []
