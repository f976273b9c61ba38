# Copyright (c) 2025 Stephen Clau
#
# This file is part of Rust RCON Console.
#
# Rust RCON Console is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Configuration module for Rust RCON Console.

Layered configuration:
- config.yml in CONFIG_DIR (optional, ${VAR} expansion supported)
- Last-used connection settings from the local store overlay the YAML values
- Environment variables override both
- Docker secrets support for the RCON password: /run/secrets/rcon_password
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Dict, Any, List
import os
import re
import yaml
import structlog

logger = structlog.get_logger()


def _read_docker_secret(secret_name: str) -> Optional[str]:
    """Return the stripped contents of /run/secrets/<secret_name>, or None."""
    secret_path = Path(f"/run/secrets/{secret_name}")

    if secret_path.exists():
        try:
            return secret_path.read_text().strip()
        except (IOError, OSError) as e:
            logger.warning("docker_secret_read_error", secret=secret_name, error=str(e))
            return None

    return None


def get_config_value(
    env_var: str,
    secret_name: Optional[str] = None,
    required: bool = False,
    default: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve one setting: Docker secret, then environment, then default.

    Only the RCON password is expected as a secret (``rcon_password``), but
    every lookup checks /run/secrets/<secret_name> first so deployments can
    move any setting there.

    Raises:
        ValueError: If required=True and no source provides a value
    """
    if secret_name is None:
        secret_name = env_var.lower()

    secret_value = _read_docker_secret(secret_name)
    if secret_value is not None:
        logger.debug("config_value_loaded_from_secret", var=env_var)
        return secret_value

    env_value = os.getenv(env_var)
    if env_value is not None:
        logger.debug("config_value_loaded_from_env", var=env_var)
        return env_value

    if default is not None:
        return default

    if required:
        raise ValueError(
            f"Required configuration value not found for '{env_var}' "
            f"(secret '{secret_name}' or environment)"
        )

    return None


def _safe_int(value: Any, field_name: str, default: int) -> int:
    """int() for YAML/env values; bools and other types are rejected."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {field_name} to int: bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {field_name}: {value}")
    raise ValueError(f"Cannot convert {field_name} to int: {type(value).__name__}")


def _safe_float(value: Any, field_name: str, default: float) -> float:
    """float() counterpart of _safe_int."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {field_name} to float: bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {field_name}: {value}")
    raise ValueError(f"Cannot convert {field_name} to float: {type(value).__name__}")


def _safe_bool(value: Any, default: bool) -> bool:
    """Interpret YAML/env style booleans ("true", "1", "yes", ...)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in strings; unknown variables stay as-is."""
    if not isinstance(value, str):
        return value
    return re.sub(r"\$\{([^}]+)\}", lambda m: os.getenv(m.group(1), m.group(0)), value)


@dataclass
class ConnectionConfig:
    """Connection settings for one Rust WebRCON endpoint."""

    host: str = "127.0.0.1"
    """Server address."""

    port: int = 28015
    """Game port (informational, used for display only)."""

    rcon_port: int = 28016
    """WebRCON port."""

    password: str = ""
    """RCON password. Sent as the URL path segment, never as a header."""

    server_name: str = "My Rust Server"
    """Friendly name shown in logs."""

    auto_connect: bool = False
    """Connect automatically on startup."""

    def missing_fields(self) -> List[str]:
        """Return the names of required connection fields that are empty."""
        missing: List[str] = []
        if not self.host:
            missing.append("host")
        if not self.rcon_port:
            missing.append("rcon_port")
        if not self.password:
            missing.append("password")
        return missing

    @property
    def url(self) -> str:
        """WebRCON target. The password is embedded as the path."""
        return f"ws://{self.host}:{self.rcon_port}/{self.password}"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        """
        Build a ConnectionConfig from loosely typed data (YAML or store).

        Unknown keys are ignored; missing keys take the defaults.
        """
        defaults = cls()
        return cls(
            host=str(data["host"]) if data.get("host") is not None else defaults.host,
            port=_safe_int(data.get("port"), "port", defaults.port),
            rcon_port=_safe_int(data.get("rcon_port"), "rcon_port", defaults.rcon_port),
            password=str(_expand_env_vars(data.get("password") or "")),
            server_name=str(data.get("server_name") or defaults.server_name),
            auto_connect=_safe_bool(data.get("auto_connect"), defaults.auto_connect),
        )


@dataclass
class Config:
    """Main application configuration."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    """Connection settings (last used, or from config.yml / env)."""

    poll_interval: float = 5.0
    """Seconds between playerlist refresh commands while connected."""

    connect_timeout: float = 10.0
    """Seconds to wait for the websocket handshake before giving up."""

    reconnect_delay: float = 1.0
    """Delay between the forced disconnect and the new connect on reconnect."""

    log_buffer_size: int = 1000
    """Number of console lines kept in memory."""

    geo_timeout: float = 10.0
    """Total timeout (seconds) for a single geolocation provider request."""

    data_path: Path = field(default_factory=lambda: Path("data/rcon_console.json"))
    """JSON file backing the local key-value store (settings, player history)."""

    health_check_host: str = "0.0.0.0"
    """Host to bind health check server to. Default: 0.0.0.0"""

    health_check_port: int = 8080
    """Port to bind health check server to. Default: 8080"""

    log_level: str = "info"
    """Logging level: debug, info, warning, error. Default: info"""

    log_format: str = "console"
    """Logging format: console or json. Default: console"""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not isinstance(self.data_path, Path):
            self.data_path = Path(self.data_path)

        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")

        if self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be > 0, got {self.connect_timeout}")

        if self.reconnect_delay < 0:
            raise ValueError(f"reconnect_delay must be >= 0, got {self.reconnect_delay}")

        if self.log_buffer_size <= 0:
            raise ValueError(f"log_buffer_size must be > 0, got {self.log_buffer_size}")

        if not 1 <= self.connection.rcon_port <= 65535:
            raise ValueError(f"Invalid RCON port: {self.connection.rcon_port}")

        valid_levels = {"debug", "info", "warning", "error"}
        if self.log_level.lower() not in valid_levels:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )

        if not 1 <= self.health_check_port <= 65535:
            raise ValueError(
                f"Invalid health_check_port: {self.health_check_port}. Must be 1-65535"
            )

        valid_formats = {"console", "json"}
        if self.log_format.lower() not in valid_formats:
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. Must be one of: {', '.join(sorted(valid_formats))}"
            )


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Read config.yml; a missing file yields an empty mapping."""
    if not config_path.exists():
        logger.info("config_file_not_found_using_defaults", path=str(config_path))
        return {}

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    return data


def load_config(saved_connection: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load configuration from config.yml, saved settings, and the environment.

    Priority order for each connection value:
    1. Environment variable (or Docker secret for the password)
    2. Last-used connection settings (saved_connection)
    3. config.yml
    4. Hardcoded defaults

    Args:
        saved_connection: Connection settings persisted by a previous session

    Returns:
        Fully populated Config object with validation

    Raises:
        ValueError: If a value cannot be converted or fails validation
        yaml.YAMLError: If config.yml is invalid YAML
    """
    config_dir = os.getenv("CONFIG_DIR", ".")
    data = _load_yaml(Path(config_dir) / "config.yml")

    connection_data: Dict[str, Any] = dict(data.get("connection") or {})
    if saved_connection:
        connection_data.update(
            {k: v for k, v in saved_connection.items() if v is not None}
        )

    env_overrides = {
        "host": get_config_value(env_var="RCON_HOST"),
        "rcon_port": get_config_value(env_var="RCON_PORT"),
        "password": get_config_value(env_var="RCON_PASSWORD", secret_name="rcon_password"),
        "server_name": get_config_value(env_var="SERVER_NAME"),
        "auto_connect": get_config_value(env_var="AUTO_CONNECT"),
    }
    connection_data.update({k: v for k, v in env_overrides.items() if v is not None})

    connection = ConnectionConfig.from_dict(connection_data)

    session_data: Dict[str, Any] = data.get("session") or {}
    geo_data: Dict[str, Any] = data.get("geo") or {}
    health_data: Dict[str, Any] = data.get("health") or {}
    logging_data: Dict[str, Any] = data.get("logging") or {}

    poll_interval = _safe_float(
        get_config_value(env_var="POLL_INTERVAL") or session_data.get("poll_interval"),
        "poll_interval",
        5.0,
    )
    connect_timeout = _safe_float(
        get_config_value(env_var="CONNECT_TIMEOUT") or session_data.get("connect_timeout"),
        "connect_timeout",
        10.0,
    )
    reconnect_delay = _safe_float(
        session_data.get("reconnect_delay"), "reconnect_delay", 1.0
    )
    log_buffer_size = _safe_int(
        session_data.get("log_buffer_size"), "log_buffer_size", 1000
    )
    geo_timeout = _safe_float(geo_data.get("timeout"), "geo.timeout", 10.0)

    data_path = Path(
        get_config_value(
            env_var="DATA_PATH",
            default=_expand_env_vars(data.get("data_path", "data/rcon_console.json")),
        )
        or "data/rcon_console.json"
    )

    health_check_host = get_config_value(
        env_var="HEALTH_CHECK_HOST",
        default=health_data.get("host", "0.0.0.0"),
    )
    health_check_port = _safe_int(
        get_config_value(env_var="HEALTH_CHECK_PORT") or health_data.get("port"),
        "health_check_port",
        8080,
    )

    log_level = get_config_value(
        env_var="LOG_LEVEL",
        default=logging_data.get("level", "info"),
    )
    log_format = get_config_value(
        env_var="LOG_FORMAT",
        default=logging_data.get("format", "console"),
    )

    return Config(
        connection=connection,
        poll_interval=poll_interval,
        connect_timeout=connect_timeout,
        reconnect_delay=reconnect_delay,
        log_buffer_size=log_buffer_size,
        geo_timeout=geo_timeout,
        data_path=data_path,
        health_check_host=health_check_host or "0.0.0.0",
        health_check_port=health_check_port,
        log_level=log_level or "info",
        log_format=log_format or "console",
    )


def validate_config(config: Config) -> bool:
    """
    Validate a Config object for completeness.

    Only auto-connect needs a complete connection up front; otherwise the
    operator supplies the missing values before connecting.

    Returns:
        True if config is usable, False otherwise
    """
    try:
        missing = config.connection.missing_fields()
        if config.connection.auto_connect and missing:
            logger.error("config_validation_failed_auto_connect", missing=missing)
            return False

        if missing:
            logger.warning("config_connection_incomplete", missing=missing)

        parent = config.data_path.parent
        if str(parent) not in ("", ".") and not parent.exists():
            logger.warning("config_data_dir_missing", data_dir=str(parent))

        return True

    except Exception as e:
        logger.error("config_validation_error", error=str(e))
        return False
