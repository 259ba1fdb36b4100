"""DayFlow configuration loading and validation.

Reads ``dayflow.toml``, resolves ``${VAR_NAME}`` references from the
environment and returns a validated :class:`DayflowConfig`.

Example::

    [dayflow]
    user_id = "0b6f..."
    timezone = "Europe/Berlin"

    [dayflow.database]
    dsn = "${DAYFLOW_DATABASE_URL}"

    [dayflow.google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "http://localhost:5173/auth/google/callback"

    [dayflow.sync]
    auto_sync = true
    sync_only_scheduled = true
    calendar_id = "primary"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "dayflow.toml"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_MAX_INSTANCES = 500
DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks.readonly",
)

# ${VAR_NAME}: letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [dayflow.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass
class DatabaseConfig:
    dsn: str
    min_size: int = 1
    max_size: int = 5


@dataclass
class GoogleOAuthConfig:
    """OAuth client registration. ``client_secret`` is never logged."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r})"
        )


@dataclass
class SyncSettings:
    """Calendar sync preferences from [dayflow.sync].

    ``auto_sync`` gates the mutation-driven reconciliation; manual sync
    actions ignore it. ``sync_only_scheduled`` keeps tasks without a
    schedulable date out of the calendar.
    """

    auto_sync: bool = False
    sync_only_scheduled: bool = True
    calendar_id: str = DEFAULT_CALENDAR_ID
    source_title: str = "DayFlow"
    source_url: str | None = None


@dataclass
class RecurrenceSettings:
    max_instances: int = DEFAULT_MAX_INSTANCES


@dataclass
class DayflowConfig:
    """Parsed and validated DayFlow configuration."""

    user_id: str
    database: DatabaseConfig
    google: GoogleOAuthConfig
    timezone: str = DEFAULT_TIMEZONE
    sync: SyncSettings = field(default_factory=SyncSettings)
    recurrence: RecurrenceSettings = field(default_factory=RecurrenceSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaves pass through unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _require_str(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _as_bool(section: dict[str, Any], key: str, default: bool, path: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{path}.{key} must be a boolean")
    return value


def _parse_database(section: Any) -> DatabaseConfig:
    if not isinstance(section, dict):
        raise ConfigError("Missing [dayflow.database] section in config")
    dsn = _require_str(section, "dsn", "dayflow.database")
    min_size = int(section.get("min_size", 1))
    max_size = int(section.get("max_size", 5))
    if min_size < 0 or max_size < 1 or min_size > max_size:
        raise ConfigError("dayflow.database pool sizes must satisfy 0 <= min_size <= max_size")
    return DatabaseConfig(dsn=dsn, min_size=min_size, max_size=max_size)


def _parse_google(section: Any) -> GoogleOAuthConfig:
    if not isinstance(section, dict):
        raise ConfigError("Missing [dayflow.google] section in config")
    scopes_raw = section.get("scopes", list(DEFAULT_SCOPES))
    if not isinstance(scopes_raw, list) or not all(isinstance(s, str) for s in scopes_raw):
        raise ConfigError("dayflow.google.scopes must be a list of strings")
    scopes = tuple(s.strip() for s in scopes_raw if s.strip())
    if not scopes:
        raise ConfigError("dayflow.google.scopes must not be empty")
    return GoogleOAuthConfig(
        client_id=_require_str(section, "client_id", "dayflow.google"),
        client_secret=_require_str(section, "client_secret", "dayflow.google"),
        redirect_uri=_require_str(section, "redirect_uri", "dayflow.google"),
        scopes=scopes,
    )


def _parse_sync(section: Any) -> SyncSettings:
    if section is None:
        return SyncSettings()
    if not isinstance(section, dict):
        raise ConfigError("[dayflow.sync] must be a table")
    calendar_id = str(section.get("calendar_id", DEFAULT_CALENDAR_ID)).strip()
    if not calendar_id:
        raise ConfigError("dayflow.sync.calendar_id must be a non-empty string")
    source_url = section.get("source_url")
    if source_url is not None and not isinstance(source_url, str):
        raise ConfigError("dayflow.sync.source_url must be a string when set")
    return SyncSettings(
        auto_sync=_as_bool(section, "auto_sync", False, "dayflow.sync"),
        sync_only_scheduled=_as_bool(section, "sync_only_scheduled", True, "dayflow.sync"),
        calendar_id=calendar_id,
        source_title=str(section.get("source_title", "DayFlow")),
        source_url=source_url or None,
    )


def _parse_recurrence(section: Any) -> RecurrenceSettings:
    if section is None:
        return RecurrenceSettings()
    if not isinstance(section, dict):
        raise ConfigError("[dayflow.recurrence] must be a table")
    max_instances = section.get("max_instances", DEFAULT_MAX_INSTANCES)
    if not isinstance(max_instances, int) or isinstance(max_instances, bool) or max_instances < 1:
        raise ConfigError("dayflow.recurrence.max_instances must be a positive integer")
    return RecurrenceSettings(max_instances=max_instances)


def _parse_logging(section: Any) -> LoggingConfig:
    if section is None:
        return LoggingConfig()
    if not isinstance(section, dict):
        raise ConfigError("[dayflow.logging] must be a table")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid dayflow.logging.format: {log_format!r}. Must be 'text' or 'json'."
        )
    log_file = section.get("file")
    return LoggingConfig(level=log_level, format=log_format, file=log_file or None)


def parse_config(data: dict[str, Any]) -> DayflowConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    root = data.get("dayflow")
    if not isinstance(root, dict):
        raise ConfigError("Missing [dayflow] section in config")

    user_id = _require_str(root, "user_id", "dayflow")

    timezone = str(root.get("timezone", DEFAULT_TIMEZONE)).strip() or DEFAULT_TIMEZONE
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown dayflow.timezone: {timezone!r}") from exc

    return DayflowConfig(
        user_id=user_id,
        timezone=timezone,
        database=_parse_database(root.get("database")),
        google=_parse_google(root.get("google")),
        sync=_parse_sync(root.get("sync")),
        recurrence=_parse_recurrence(root.get("recurrence")),
        logging=_parse_logging(root.get("logging")),
    )


def load_config(path: Path) -> DayflowConfig:
    """Load and validate a ``dayflow.toml``.

    *path* may point at the file itself or at the directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
