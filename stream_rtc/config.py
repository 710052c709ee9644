"""Configuration management for stream-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (STREAM_RTC_SIGNALING_WS, STREAM_RTC_PASSWORD, ...)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- stream-rtc.toml in current working directory
- ~/.stream-rtc/config.toml

Environment selection via STREAM_RTC_ENV (development, staging, production).
Defaults to development if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://signal.example.org"
    password = "change-me"
    legacy_candidate_fanout = false

    [[environments.production.ice_servers]]
    urls = ["stun:stun.l.google.com:19302"]
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8181"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8181
DEFAULT_MAX_PARTICIPANTS = 4
DEFAULT_ICE_SERVERS = [
    {"urls": ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]}
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class IceServerConfig:
    """A STUN/TURN server handed to every session engine.

    Attributes:
        urls: One or more ``stun:``/``turn:`` URLs.
        username: TURN username, if any.
        credential: TURN credential, if any.
    """

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        return cls(
            urls=data.get("urls"),
            username=data.get("username"),
            credential=data.get("credential"),
        )

    def to_kwargs(self) -> dict:
        """Keyword arguments for ``aiortc.RTCIceServer``."""
        kwargs = {"urls": self.urls}
        if self.username:
            kwargs["username"] = self.username
        if self.credential:
            kwargs["credential"] = self.credential
        return kwargs


class Config:
    """Configuration manager for stream-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.password: Optional[str] = None
        self.default_max_participants: int = DEFAULT_MAX_PARTICIPANTS
        self.legacy_candidate_fanout: bool = False
        self.ice_servers: List[IceServerConfig] = [
            IceServerConfig.from_dict(s) for s in DEFAULT_ICE_SERVERS
        ]
        self.environment: str = "development"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from STREAM_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to development if not set or invalid.
        """
        env = os.getenv("STREAM_RTC_ENV", "development").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid STREAM_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'development'."
            )
            env = "development"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. stream-rtc.toml in current working directory
        2. ~/.stream-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "stream-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".stream-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )
        if "host" in env_config:
            self.host = env_config["host"]
        if "port" in env_config:
            self.port = int(env_config["port"])
        if "password" in env_config:
            self.password = env_config["password"]
        if "default_max_participants" in env_config:
            self.default_max_participants = int(env_config["default_max_participants"])
        if "legacy_candidate_fanout" in env_config:
            self.legacy_candidate_fanout = bool(env_config["legacy_candidate_fanout"])

        if "ice_servers" in env_config:
            servers = []
            for entry in env_config["ice_servers"]:
                try:
                    servers.append(IceServerConfig.from_dict(entry))
                except ValueError as e:
                    logger.warning(f"Skipping invalid ICE server entry: {e}")
            self.ice_servers = servers

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("STREAM_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("STREAM_RTC_HOST")
        if host_override:
            self.host = host_override

        port_override = os.getenv("STREAM_RTC_PORT")
        if port_override:
            try:
                self.port = int(port_override)
            except ValueError:
                logger.warning(f"Ignoring invalid STREAM_RTC_PORT: {port_override}")

        password_override = os.getenv("STREAM_RTC_PASSWORD")
        if password_override:
            self.password = password_override
            logger.info("Overriding password from env")

        fanout_override = os.getenv("STREAM_RTC_LEGACY_FANOUT")
        if fanout_override:
            self.legacy_candidate_fanout = fanout_override.lower() in _TRUTHY

    def get_websocket_url(self, port: Optional[int] = None) -> str:
        """Get the WebSocket signaling server URL.

        Args:
            port: Port number to use if not specified in URL (default: configured port).

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port or self.port}"
        return url


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
