"""Daybrief configuration loading and validation.

Reads ``daybrief.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`DaybriefConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from daybrief.models import DEFAULT_TIMEZONE, DaybriefError, resolve_timezone

DEFAULT_CONFIG_PATH = Path("daybrief.toml")

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = ("text", "json")


class ConfigError(DaybriefError):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [daybrief.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DetectionConfig:
    """Change-detection policy from [daybrief.detection] section."""

    debounce_minutes: float = 5.0

    @property
    def debounce(self) -> timedelta:
        return timedelta(minutes=self.debounce_minutes)


@dataclass
class SummaryConfig:
    """Summary rendering options from [daybrief.summary] section."""

    min_free_block_minutes: float = 15.0

    @property
    def min_free_block(self) -> timedelta:
        return timedelta(minutes=self.min_free_block_minutes)


@dataclass
class TimeoutConfig:
    """Collaborator call timeouts from [daybrief.timeouts] section."""

    fetch_timeout_s: float = 30.0
    send_timeout_s: float = 15.0


@dataclass
class DatabaseConfig:
    """Connection parameters from [daybrief.db]; unset fields fall back to env."""

    name: str = "daybrief"
    url: str | None = None
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    ssl: str | None = None
    users_table: str = "users"


@dataclass
class TwilioConfig:
    """Outbound WhatsApp channel credentials from [daybrief.twilio]."""

    account_sid: str | None = None
    auth_token: str | None = None
    from_number: str | None = None
    default_recipient: str | None = None  # used for users with no recipients


@dataclass
class GoogleConfig:
    """OAuth client used to refresh per-user Google Calendar tokens."""

    client_id: str | None = None
    client_secret: str | None = None
    calendar_id: str = "primary"


@dataclass
class DaybriefConfig:
    """Top-level validated configuration."""

    change_check_interval_minutes: float = 5.0
    change_window_hours: float = 24.0
    default_timezone: str = DEFAULT_TIMEZONE
    shutdown_timeout_s: float = 30.0
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    twilio: TwilioConfig = field(default_factory=TwilioConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)

    @property
    def change_check_interval(self) -> timedelta:
        return timedelta(minutes=self.change_check_interval_minutes)

    @property
    def change_window(self) -> timedelta:
        return timedelta(hours=self.change_window_hours)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    raw = parent.get(key, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return raw


def _positive_number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive number.")
    return float(value)


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = section.get("level", "INFO")
    fmt = section.get("format", "text")
    if not isinstance(level, str) or not level.strip():
        raise ConfigError("daybrief.logging.level must be a non-empty string")
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"Invalid daybrief.logging.format: {fmt!r}. Expected one of: "
            + ", ".join(_VALID_LOG_FORMATS)
        )
    return LoggingConfig(
        level=level.strip().upper(),
        format=fmt,
        log_root=_optional_str(section, "log_root", "daybrief.logging"),
    )


def _parse_db(section: dict[str, Any]) -> DatabaseConfig:
    path = "daybrief.db"
    port = section.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
        raise ConfigError(f"{path}.port must be an integer when set")
    return DatabaseConfig(
        name=_optional_str(section, "name", path) or "daybrief",
        url=_optional_str(section, "url", path),
        host=_optional_str(section, "host", path),
        port=port,
        user=_optional_str(section, "user", path),
        password=_optional_str(section, "password", path),
        ssl=_optional_str(section, "ssl", path),
        users_table=_optional_str(section, "users_table", path) or "users",
    )


def parse_config(data: dict[str, Any]) -> DaybriefConfig:
    """Validate an already-decoded TOML document.

    A missing ``[daybrief]`` table yields all defaults.
    """
    data = resolve_env_vars(data)
    root = _section(data, "daybrief", "daybrief")

    default_timezone = root.get("default_timezone", DEFAULT_TIMEZONE)
    if not isinstance(default_timezone, str):
        raise ConfigError("daybrief.default_timezone must be a string")
    try:
        resolve_timezone(default_timezone)
    except ValueError as exc:
        raise ConfigError(f"Invalid daybrief.default_timezone: {exc}") from exc

    detection = _section(root, "detection", "daybrief.detection")
    summary = _section(root, "summary", "daybrief.summary")
    timeouts = _section(root, "timeouts", "daybrief.timeouts")
    twilio = _section(root, "twilio", "daybrief.twilio")
    google = _section(root, "google", "daybrief.google")

    debounce_minutes = detection.get("debounce_minutes", 5.0)
    if (
        isinstance(debounce_minutes, bool)
        or not isinstance(debounce_minutes, int | float)
        or debounce_minutes < 0
    ):
        raise ConfigError(
            f"Invalid daybrief.detection.debounce_minutes: {debounce_minutes!r}. "
            "Must be a non-negative number."
        )

    return DaybriefConfig(
        change_check_interval_minutes=_positive_number(
            root, "change_check_interval_minutes", 5.0, "daybrief"
        ),
        change_window_hours=_positive_number(root, "change_window_hours", 24.0, "daybrief"),
        default_timezone=default_timezone,
        shutdown_timeout_s=_positive_number(root, "shutdown_timeout_s", 30.0, "daybrief"),
        detection=DetectionConfig(debounce_minutes=float(debounce_minutes)),
        summary=SummaryConfig(
            min_free_block_minutes=_positive_number(
                summary, "min_free_block_minutes", 15.0, "daybrief.summary"
            )
        ),
        timeouts=TimeoutConfig(
            fetch_timeout_s=_positive_number(
                timeouts, "fetch_timeout_s", 30.0, "daybrief.timeouts"
            ),
            send_timeout_s=_positive_number(timeouts, "send_timeout_s", 15.0, "daybrief.timeouts"),
        ),
        logging=_parse_logging(_section(root, "logging", "daybrief.logging")),
        db=_parse_db(_section(root, "db", "daybrief.db")),
        twilio=TwilioConfig(
            account_sid=_optional_str(twilio, "account_sid", "daybrief.twilio"),
            auth_token=_optional_str(twilio, "auth_token", "daybrief.twilio"),
            from_number=_optional_str(twilio, "from_number", "daybrief.twilio"),
            default_recipient=_optional_str(twilio, "default_recipient", "daybrief.twilio"),
        ),
        google=GoogleConfig(
            client_id=_optional_str(google, "client_id", "daybrief.google"),
            client_secret=_optional_str(google, "client_secret", "daybrief.google"),
            calendar_id=_optional_str(google, "calendar_id", "daybrief.google") or "primary",
        ),
    )


def load_config(path: Path | None = None) -> DaybriefConfig:
    """Load and validate a ``daybrief.toml`` file.

    A missing file at the default location yields all defaults; an explicitly
    requested path must exist.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path or DEFAULT_CONFIG_PATH
    if not toml_path.exists():
        if path is None:
            return parse_config({})
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
