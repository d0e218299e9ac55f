"""Configuration management for the CDP client.

Supports multiple configuration sources with precedence:
CLI flags > Environment variables > Config file > Defaults

Usage:
    >>> config = Configuration()
    >>> config.load_from_file("~/.cdprc")
    >>> config.load_from_env()
    >>> config.merge(chrome_port=9333)  # CLI overrides
    >>> print(config.remote_debug_url)
    http://localhost:9333
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class Configuration:
    """Configuration manager with layered precedence.

    Precedence order (highest to lowest):
    1. CLI arguments (via merge method)
    2. Environment variables (CDP_* prefix)
    3. Config file (~/.cdprc JSON)
    4. Default values

    Attributes:
        chrome_host: Host of the Chrome debugger HTTP endpoint (default: "localhost")
        chrome_port: Chrome remote debugging port (default: 9222)
        timeout: CDP command timeout in seconds (default: 30.0)
        max_size: Maximum WebSocket message size in bytes (default: 2MB)
        event_buffer_size: Events buffered per subscription (default: 1000)
        override_host_header: Send "Host: localhost" to the debugger (default: False)
        log_level: Logging level (default: "INFO")
        log_format: Log output format "text" or "json" (default: "text")
    """

    DEFAULTS: Dict[str, Any] = {
        "chrome_host": "localhost",
        "chrome_port": 9222,
        "timeout": 30.0,
        "max_size": 2_097_152,  # 2MB
        "event_buffer_size": 1000,
        "override_host_header": False,
        "log_level": "INFO",
        "log_format": "text",
    }

    ENV_MAPPINGS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
        "CDP_CHROME_HOST": ("chrome_host", str),
        "CDP_CHROME_PORT": ("chrome_port", int),
        "CDP_TIMEOUT": ("timeout", float),
        "CDP_MAX_SIZE": ("max_size", int),
        "CDP_EVENT_BUFFER_SIZE": ("event_buffer_size", int),
        "CDP_OVERRIDE_HOST_HEADER": ("override_host_header", _parse_bool),
        "CDP_LOG_LEVEL": ("log_level", str),
        "CDP_LOG_FORMAT": ("log_format", str),
    }

    def __init__(self):
        self.chrome_host: str = self.DEFAULTS["chrome_host"]
        self.chrome_port: int = self.DEFAULTS["chrome_port"]
        self.timeout: float = self.DEFAULTS["timeout"]
        self.max_size: int = self.DEFAULTS["max_size"]
        self.event_buffer_size: int = self.DEFAULTS["event_buffer_size"]
        self.override_host_header: bool = self.DEFAULTS["override_host_header"]
        self.log_level: str = self.DEFAULTS["log_level"]
        self.log_format: str = self.DEFAULTS["log_format"]

    @property
    def remote_debug_url(self) -> str:
        """HTTP URL of the debugger endpoint."""
        return f"http://{self.chrome_host}:{self.chrome_port}"

    def load_from_file(self, file_path: str) -> None:
        """Load configuration from JSON file.

        Args:
            file_path: Path to config file (typically ~/.cdprc)

        Note:
            Invalid JSON or missing file is ignored with a log message.
            Partial configs are merged with existing values.
        """
        path = Path(file_path).expanduser()

        if not path.exists():
            logger.debug(f"Config file not found: {path}")
            return

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in config file {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Error loading config file {path}: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Config file {path} must contain a JSON object")
            return

        self._merge_dict(data)
        logger.info(f"Loaded configuration from {path}")

    def load_from_env(self) -> None:
        """Load configuration from CDP_* environment variables.

        Invalid values are ignored with warning log.
        """
        for env_var, (attr_name, type_converter) in self.ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is not None:
                try:
                    converted_value = type_converter(value)
                    setattr(self, attr_name, converted_value)
                    logger.debug(f"Loaded {attr_name}={converted_value} from {env_var}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"Invalid value for {env_var}: {value} ({e})")

    def merge(self, **kwargs) -> None:
        """Merge CLI arguments into configuration (highest precedence).

        Example:
            >>> config.merge(chrome_port=9333, timeout=15.0)
        """
        self._merge_dict(kwargs)

    def _merge_dict(self, data: dict) -> None:
        for key, value in data.items():
            if key in self.DEFAULTS and value is not None:
                setattr(self, key, value)
                logger.debug(f"Set {key}={value}")
            elif key not in self.DEFAULTS:
                logger.debug(f"Ignoring unknown configuration key: {key}")

    def to_dict(self) -> dict:
        return {key: getattr(self, key) for key in self.DEFAULTS}

    def __repr__(self) -> str:
        return f"Configuration({self.to_dict()})"
