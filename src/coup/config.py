"""Service configuration loading and validation.

Reads ``coup.toml``, expands ``${VAR}`` references from the environment,
and returns a validated :class:`CoupConfig` dataclass. Every section is
optional; a missing file yields the defaults below.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")
_HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

CONFIG_ENV_VAR = "COUP_CONFIG"
DEFAULT_CONFIG_PATH = Path("coup.toml")

DEFAULT_TIMEZONE = "Asia/Seoul"
DEFAULT_GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


class ConfigError(Exception):
    """Raised when service configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [coup.logging] section."""

    level: str = "INFO"
    format: str = "text"
    log_root: str | None = None


@dataclass
class CalendarSettings:
    """External calendar settings from the [coup.calendar] section."""

    timezone: str = DEFAULT_TIMEZONE
    api_base_url: str = DEFAULT_GOOGLE_CALENDAR_API_BASE_URL
    request_timeout_s: float = 30.0
    default_start_time: time = time(9, 0)
    default_title: str = "Work"

    @property
    def zoneinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class SyncTuning:
    """Reconciliation and backfill tuning from the [coup.sync] section.

    ``past_days``/``future_days`` bound the routine sync window around now.
    Inserts are written in sequential batches of ``insert_batch_size``;
    updates in sequential groups of ``update_group_size`` whose members run
    concurrently. Backfill syncs ``future_months`` upcoming months before
    walking history, pausing ``chunk_pause_ms`` between chunks.
    """

    past_days: int = 180
    future_days: int = 90
    insert_batch_size: int = 100
    update_group_size: int = 10
    future_months: int = 3
    chunk_pause_ms: int = 100
    auto_sync_interval_minutes: int = 5


@dataclass
class CoupConfig:
    """Top-level parsed configuration."""

    name: str = "coup"
    port: int = 8000
    api_base_url: str | None = None
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    sync: SyncTuning = field(default_factory=SyncTuning)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def resolved_api_base_url(self) -> str:
        return self.api_base_url or f"http://localhost:{self.port}"


def _expand(text: str) -> str:
    names = _ENV_VAR_PATTERN.findall(text)
    unset = [name for name in dict.fromkeys(names) if name not in os.environ]
    if unset:
        raise ConfigError(f"Environment variable(s) not set: {', '.join(unset)} in {text!r}")
    return _ENV_VAR_PATTERN.sub(lambda m: os.environ[m.group(1)], text)


def resolve_env_vars(value: Any) -> Any:
    """Expand ``${VAR}`` in every string of a decoded TOML tree.

    All unset variables in one string are reported together.
    """
    match value:
        case str():
            return _expand(value)
        case dict():
            return {key: resolve_env_vars(item) for key, item in value.items()}
        case list():
            return [resolve_env_vars(item) for item in value]
        case _:
            return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, prefix: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {prefix}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {prefix}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {prefix}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_hhmm(raw: Any, *, key: str) -> time:
    if not isinstance(raw, str) or _HHMM_PATTERN.fullmatch(raw.strip()) is None:
        raise ConfigError(f"Invalid {key}: {raw!r}. Expected 'HH:MM'.")
    hours, minutes = raw.strip().split(":")
    return time(int(hours), int(minutes))


def _parse_calendar(section: dict[str, Any]) -> CalendarSettings:
    timezone = str(section.get("timezone", DEFAULT_TIMEZONE)).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid coup.calendar.timezone: {timezone!r}") from exc

    api_base_url = str(section.get("api_base_url", DEFAULT_GOOGLE_CALENDAR_API_BASE_URL)).strip()
    if not api_base_url:
        raise ConfigError("coup.calendar.api_base_url must be a non-empty string")

    try:
        request_timeout_s = float(section.get("request_timeout_s", 30.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError("coup.calendar.request_timeout_s must be a number") from exc
    if request_timeout_s <= 0:
        raise ConfigError("coup.calendar.request_timeout_s must be positive")

    default_title = str(section.get("default_title", "Work")).strip()
    if not default_title:
        raise ConfigError("coup.calendar.default_title must be a non-empty string")

    return CalendarSettings(
        timezone=timezone,
        api_base_url=api_base_url.rstrip("/"),
        request_timeout_s=request_timeout_s,
        default_start_time=_parse_hhmm(
            section.get("default_start_time", "09:00"),
            key="coup.calendar.default_start_time",
        ),
        default_title=default_title,
    )


def _parse_sync(section: dict[str, Any]) -> SyncTuning:
    prefix = "coup.sync"
    raw_pause = section.get("chunk_pause_ms", 100)
    try:
        chunk_pause_ms = int(raw_pause)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {prefix}.chunk_pause_ms: {raw_pause!r}") from exc
    if chunk_pause_ms < 0:
        raise ConfigError(f"Invalid {prefix}.chunk_pause_ms: {chunk_pause_ms!r}. Must be >= 0.")

    return SyncTuning(
        past_days=_positive_int(section, "past_days", 180, prefix=prefix),
        future_days=_positive_int(section, "future_days", 90, prefix=prefix),
        insert_batch_size=_positive_int(section, "insert_batch_size", 100, prefix=prefix),
        update_group_size=_positive_int(section, "update_group_size", 10, prefix=prefix),
        future_months=_positive_int(section, "future_months", 3, prefix=prefix),
        chunk_pause_ms=chunk_pause_ms,
        auto_sync_interval_minutes=_positive_int(
            section, "auto_sync_interval_minutes", 5, prefix=prefix
        ),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    fmt = str(section.get("format", "text")).lower()
    if fmt not in {"text", "json"}:
        raise ConfigError(f"coup.logging.format must be 'text' or 'json', got {fmt!r}")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=section.get("log_root"),
    )


def parse_config(data: dict[str, Any]) -> CoupConfig:
    """Validate an already-decoded TOML mapping into a :class:`CoupConfig`."""
    data = resolve_env_vars(data)

    coup_section = data.get("coup", {})
    if not isinstance(coup_section, dict):
        raise ConfigError("[coup] must be a table")

    name = str(coup_section.get("name", "coup")).strip()
    if not name:
        raise ConfigError("coup.name must be a non-empty string")

    port = _positive_int(coup_section, "port", 8000, prefix="coup")
    api_base_url = coup_section.get("api_base_url")
    if api_base_url is not None:
        api_base_url = str(api_base_url).strip().rstrip("/") or None

    return CoupConfig(
        name=name,
        port=port,
        api_base_url=api_base_url,
        calendar=_parse_calendar(coup_section.get("calendar", {})),
        sync=_parse_sync(coup_section.get("sync", {})),
        logging=_parse_logging(coup_section.get("logging", {})),
    )


def load_config(path: Path | None = None) -> CoupConfig:
    """Load ``coup.toml`` from *path*, ``$COUP_CONFIG`` or the working directory.

    Only the implicit ``./coup.toml`` may be absent, in which case the
    defaults are used.
    """
    if path is None and CONFIG_ENV_VAR in os.environ:
        path = Path(os.environ[CONFIG_ENV_VAR])
    if path is None:
        if not DEFAULT_CONFIG_PATH.is_file():
            return parse_config({})
        path = DEFAULT_CONFIG_PATH
    elif not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    with path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return parse_config(data)
