"""Tests for service configuration loading and validation."""

from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest

from coup.config import (
    CONFIG_ENV_VAR,
    DEFAULT_GOOGLE_CALENDAR_API_BASE_URL,
    ConfigError,
    CoupConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

FULL_TOML = """\
[coup]
name = "coup-staging"
port = 8100
api_base_url = "http://sync.internal:8100/"

[coup.calendar]
timezone = "Europe/Berlin"
api_base_url = "https://calendar.test/v3/"
request_timeout_s = 12.5
default_start_time = "08:30"
default_title = "Focus"

[coup.sync]
past_days = 30
future_days = 14
insert_batch_size = 50
update_group_size = 5
future_months = 2
chunk_pause_ms = 0
auto_sync_interval_minutes = 10

[coup.logging]
level = "debug"
format = "json"
log_root = "/var/log/coup"
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "coup.toml"
    path.write_text(content)
    return path


@pytest.fixture(autouse=True)
def _no_config_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


class TestLoadConfig:
    def test_full_file(self, tmp_path: Path):
        config = load_config(_write_toml(tmp_path, FULL_TOML))

        assert config.name == "coup-staging"
        assert config.port == 8100
        assert config.resolved_api_base_url == "http://sync.internal:8100"
        assert config.calendar.timezone == "Europe/Berlin"
        assert config.calendar.api_base_url == "https://calendar.test/v3"
        assert config.calendar.request_timeout_s == 12.5
        assert config.calendar.default_start_time == time(8, 30)
        assert config.calendar.default_title == "Focus"
        assert config.sync.past_days == 30
        assert config.sync.insert_batch_size == 50
        assert config.sync.update_group_size == 5
        assert config.sync.future_months == 2
        assert config.sync.chunk_pause_ms == 0
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "/var/log/coup"

    def test_missing_default_file_yields_defaults(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config == CoupConfig()
        assert config.calendar.timezone == "Asia/Seoul"
        assert config.calendar.api_base_url == DEFAULT_GOOGLE_CALENDAR_API_BASE_URL
        assert config.resolved_api_base_url == "http://localhost:8000"

    def test_explicit_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_env_var_points_at_file(self, tmp_path: Path, monkeypatch):
        path = _write_toml(tmp_path, '[coup]\nname = "from-env"\n')
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert load_config().name == "from-env"

    def test_invalid_toml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[coup\n"))


class TestValidation:
    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ({"coup": {"calendar": {"timezone": "Mars/Olympus"}}}, "timezone"),
            ({"coup": {"calendar": {"default_start_time": "9am"}}}, "default_start_time"),
            ({"coup": {"calendar": {"request_timeout_s": 0}}}, "request_timeout_s"),
            ({"coup": {"sync": {"insert_batch_size": 0}}}, "insert_batch_size"),
            ({"coup": {"sync": {"update_group_size": True}}}, "update_group_size"),
            ({"coup": {"sync": {"chunk_pause_ms": -1}}}, "chunk_pause_ms"),
            ({"coup": {"logging": {"format": "xml"}}}, "format"),
            ({"coup": {"port": "eighty"}}, "port"),
            ({"coup": "nope"}, "table"),
        ],
    )
    def test_rejects(self, data, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(data)


class TestEnvVars:
    def test_resolves_nested_values(self, monkeypatch):
        monkeypatch.setenv("COUP_PORT_NAME", "svc")

        resolved = resolve_env_vars({"a": ["${COUP_PORT_NAME}-1", 3], "b": {"c": "${COUP_PORT_NAME}"}})

        assert resolved == {"a": ["svc-1", 3], "b": {"c": "svc"}}

    def test_missing_variables_are_reported_together(self, monkeypatch):
        monkeypatch.delenv("COUP_MISSING_A", raising=False)
        monkeypatch.delenv("COUP_MISSING_B", raising=False)

        with pytest.raises(ConfigError, match="COUP_MISSING_A, COUP_MISSING_B"):
            resolve_env_vars("${COUP_MISSING_A}/${COUP_MISSING_B}")

    def test_config_values_are_expanded(self, monkeypatch):
        monkeypatch.setenv("CALENDAR_BASE", "https://proxy.test/v3")

        config = parse_config({"coup": {"calendar": {"api_base_url": "${CALENDAR_BASE}"}}})

        assert config.calendar.api_base_url == "https://proxy.test/v3"
