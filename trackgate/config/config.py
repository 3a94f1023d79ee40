"""Configuration management for trackgate.

Hierarchical loading: defaults -> TOML config file -> environment. The result
is validated into the pydantic :class:`~trackgate.models.Config` tree once at
startup.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from trackgate.exceptions import ConfigurationError
from trackgate.logging_config import setup_logging
from trackgate.models import Config

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "trackgate.toml"

# Environment variable -> dotted config path
ENV_MAPPINGS: dict[str, str] = {
    # Tracker
    "TRACKGATE_ANNOUNCE_INTERVAL": "tracker.announce_interval",
    "TRACKGATE_MIN_INTERVAL": "tracker.min_interval",
    "TRACKGATE_PEER_TIMEOUT": "tracker.peer_timeout",
    "TRACKGATE_DEFAULT_NUMWANT": "tracker.default_numwant",
    "TRACKGATE_MAX_NUMWANT": "tracker.max_numwant",
    "TRACKGATE_INFO_HASH_ALLOWLIST": "tracker.info_hash_allowlist",
    # HTTP
    "TRACKGATE_HTTP_HOST": "http.host",
    "TRACKGATE_HTTP_PORT": "http.port",
    "TRACKGATE_TRUST_PROXY": "http.trust_proxy",
    "TRACKGATE_AUTH_PATHS": "http.auth_paths",
    # UDP
    "TRACKGATE_UDP": "udp.enabled",
    "TRACKGATE_UDP_HOST": "udp.host",
    "TRACKGATE_UDP_PORT": "udp.port",
    "TRACKGATE_UDP_CONNECTION_TIMEOUT": "udp.connection_timeout",
    "TRACKGATE_UDP_SWEEP_INTERVAL": "udp.sweep_interval",
    # WebSocket
    "TRACKGATE_WS": "websocket.enabled",
    "TRACKGATE_WS_HOST": "websocket.host",
    "TRACKGATE_WS_PORT": "websocket.port",
    "TRACKGATE_WS_PATH": "websocket.path",
    "TRACKGATE_WS_HANDSHAKE_TIMEOUT": "websocket.handshake_timeout",
    "TRACKGATE_WS_HEARTBEAT": "websocket.heartbeat",
    "TRACKGATE_WS_MAX_MESSAGE_SIZE": "websocket.max_message_size",
    # Rate limits
    "TRACKGATE_RATE_LIMIT_ENABLED": "rate_limits.enabled",
    "TRACKGATE_RATE_LIMIT_EVICTION_INTERVAL": "rate_limits.eviction_interval",
    "TRACKGATE_SLOW_DOWN_WINDOW": "rate_limits.slow_down.window",
    "TRACKGATE_SLOW_DOWN_DELAY_AFTER": "rate_limits.slow_down.delay_after",
    "TRACKGATE_SLOW_DOWN_DELAY": "rate_limits.slow_down.delay",
    "TRACKGATE_SLOW_DOWN_MAX_DELAY": "rate_limits.slow_down.max_delay",
    "TRACKGATE_ROUTE_QUOTA_WINDOW": "rate_limits.route_quota.window",
    "TRACKGATE_ROUTE_QUOTA_LIMIT": "rate_limits.route_quota.limit",
    "TRACKGATE_ROUTE_QUOTA_ROUTES": "rate_limits.route_quota.routes",
    "TRACKGATE_ROUTE_QUOTA_SCOPE": "rate_limits.route_quota.scope",
    "TRACKGATE_AUTH_QUOTA_WINDOW": "rate_limits.auth_quota.window",
    "TRACKGATE_AUTH_QUOTA_LIMIT": "rate_limits.auth_quota.limit",
    "TRACKGATE_AUTH_QUOTA_ROUTES": "rate_limits.auth_quota.routes",
    "TRACKGATE_AUTH_QUOTA_SCOPE": "rate_limits.auth_quota.scope",
    # Bans
    "TRACKGATE_BAN_BACKEND": "bans.backend",
    "TRACKGATE_BAN_DATABASE": "bans.database_path",
    # Observability
    "TRACKGATE_LOG_LEVEL": "observability.log_level",
    "TRACKGATE_LOG_FILE": "observability.log_file",
    "TRACKGATE_STRUCTURED_LOGGING": "observability.structured_logging",
    "TRACKGATE_LOG_CORRELATION_ID": "observability.log_correlation_id",
}

_LIST_PATHS = frozenset(
    {
        "tracker.info_hash_allowlist",
        "http.auth_paths",
        "rate_limits.route_quota.routes",
        "rate_limits.auth_quota.routes",
    }
)

# Values that must stay strings even when they look numeric
_STRING_PATHS = frozenset(
    {
        "http.host",
        "udp.host",
        "websocket.host",
        "websocket.path",
        "bans.database_path",
        "observability.log_file",
    }
)


def _parse_env_value(raw: str, path: str) -> bool | int | float | str | list[str]:
    if path in _LIST_PATHS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    if path in _STRING_PATHS:
        return raw

    # Numbers first so "0" stays a port number; pydantic coerces 0/1 for bools
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        pass

    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates trackgate configuration."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        env: dict[str, str] | None = None,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches the
                standard locations for trackgate.toml
            env: Environment mapping (defaults to ``os.environ``)

        """
        self._env = os.environ if env is None else env
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file).expanduser()
            if not path.exists():
                msg = f"Configuration file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "trackgate" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = Config().model_dump(mode="json")

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    file_data = toml.load(f)
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e
            config_data = self._merge_config(config_data, file_data)
            logger.debug("Loaded configuration file %s", self.config_file)

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = self._env.get(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def setup_logging(self) -> None:
        """Apply the observability section to the logging system."""
        setup_logging(self.config.observability)

    def export(self) -> str:
        """Export the effective configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))
