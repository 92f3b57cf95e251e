"""Service configuration loading and validation.

Reads calsync.toml from a config directory, parses all sections, and returns
a validated CalsyncConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "calsync.toml"

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when service configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [service.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [service.db] section.

    Connection parameters come from ``DATABASE_URL`` / ``POSTGRES_*``; only
    the database name and pool sizing live in the file.
    """

    name: str = "calsync"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class GoogleConfig:
    """OAuth client and push-callback settings from [google] section."""

    client_id: str = ""
    client_secret: str = ""
    webhook_url: str | None = None


@dataclass
class RenewalConfig:
    """Webhook renewal loop configuration from [renewal] section."""

    enabled: bool = True
    interval_s: float = 3600.0
    threshold_s: float = 86400.0


@dataclass
class WebhookConfig:
    """Inbound notification dispatcher configuration from [webhooks] section."""

    queue_capacity: int = 100
    worker_count: int = 2
    drain_timeout_s: float = 10.0


@dataclass
class CalsyncConfig:
    """Parsed and validated service configuration."""

    name: str = "calsync"
    host: str = "0.0.0.0"
    port: int = 8080
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
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


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {section.get(key)!r}") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    try:
        value = float(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {section.get(key)!r}") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def _section(data: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    section = data.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return section


def load_config(config_dir: Path) -> CalsyncConfig:
    """Load and validate calsync.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Build a :class:`CalsyncConfig` from already-parsed TOML data."""
    data = resolve_env_vars(data)

    # --- [service] section ---
    service_section = _section(data, "service", "service")
    name = str(service_section.get("name", "calsync")).strip()
    if not name:
        raise ConfigError("service.name must be a non-empty string")
    host = str(service_section.get("host", "0.0.0.0"))
    port = _positive_int(service_section, "port", 8080, "service")

    # --- [service.db] sub-section ---
    db_section = _section(service_section, "db", "service.db")
    db_name = str(db_section.get("name", "calsync")).strip()
    if not db_name:
        raise ConfigError("service.db.name must be a non-empty string")
    min_pool_size = _positive_int(db_section, "min_pool_size", 2, "service.db")
    max_pool_size = _positive_int(db_section, "max_pool_size", 10, "service.db")
    if min_pool_size > max_pool_size:
        raise ConfigError("service.db.min_pool_size must not exceed service.db.max_pool_size")

    # --- [service.logging] sub-section ---
    logging_section = _section(service_section, "logging", "service.logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid service.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )

    # --- [google] section ---
    google_section = _section(data, "google", "google")
    webhook_url = google_section.get("webhook_url")
    if isinstance(webhook_url, str) and not webhook_url.strip():
        webhook_url = None

    # --- [renewal] section ---
    renewal_section = _section(data, "renewal", "renewal")
    renewal = RenewalConfig(
        enabled=bool(renewal_section.get("enabled", True)),
        interval_s=_positive_float(renewal_section, "interval_s", 3600.0, "renewal"),
        threshold_s=_positive_float(renewal_section, "threshold_s", 86400.0, "renewal"),
    )

    # --- [webhooks] section ---
    webhooks_section = _section(data, "webhooks", "webhooks")
    webhooks = WebhookConfig(
        queue_capacity=_positive_int(webhooks_section, "queue_capacity", 100, "webhooks"),
        worker_count=_positive_int(webhooks_section, "worker_count", 2, "webhooks"),
        drain_timeout_s=float(webhooks_section.get("drain_timeout_s", 10.0)),
    )

    return CalsyncConfig(
        name=name,
        host=host,
        port=port,
        db=DatabaseConfig(
            name=db_name,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        ),
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            log_root=logging_section.get("log_root"),
        ),
        google=GoogleConfig(
            client_id=str(google_section.get("client_id", "")),
            client_secret=str(google_section.get("client_secret", "")),
            webhook_url=webhook_url,
        ),
        renewal=renewal,
        webhooks=webhooks,
    )
