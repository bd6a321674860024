"""Configuration management for the exporter.

Supports multiple configuration sources with precedence:
CLI flags > Environment variables > Config file > Defaults

Usage:
    >>> config = Configuration()
    >>> config.load_from_file("~/.dishyrc")
    >>> config.load_from_env()
    >>> config.merge(listen_port=9817)  # CLI overrides
    >>> print(config.listen_port)
    9817
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class Configuration:
    """Configuration manager with layered precedence.

    Precedence order (highest to lowest):
    1. CLI arguments (via merge method)
    2. Environment variables
    3. Config file (~/.dishyrc JSON)
    4. Default values

    Attributes:
        target_url: Status page rendered by the renderer
        cdp_host: Remote debugging host
        cdp_port: Remote debugging port
        chrome_bin: Renderer binary (None = auto-discover)
        user_data_dir: Renderer profile directory (None = temporary directory)
        listen_host: HTTP listen address
        listen_port: HTTP listen port
        metric_prefix: Prefix prepended to every metric name
        naming: Nested key naming policy ("labeled" or "concatenated")
        selector: CSS selector of the element holding the JSON text
        snapshot_timeout: Seconds allowed for one snapshot
        load_timeout: Seconds to wait for the first page load
        mutation_threshold: DOM mutations to observe before reading
        timeout: Per-command RPC timeout in seconds
        max_size: Maximum WebSocket message size in bytes
        log_level: Logging level
        log_format: Log output format "text" or "json"
    """

    DEFAULTS = {
        "target_url": "http://192.168.100.1",
        "cdp_host": "127.0.0.1",
        "cdp_port": 9222,
        "chrome_bin": None,
        "user_data_dir": None,
        "listen_host": "0.0.0.0",
        "listen_port": 8055,
        "metric_prefix": "starlink_",
        "naming": "labeled",
        "selector": ".Json-Text",
        "snapshot_timeout": 10.0,
        "load_timeout": 15.0,
        "mutation_threshold": 2,
        "timeout": 30.0,
        "max_size": 2_097_152,  # 2MB
        "log_level": "INFO",
        "log_format": "text",
    }

    ENV_MAPPINGS = {
        "DISHY_ADDRESS": ("target_url", str),
        "CDP_HOST": ("cdp_host", str),
        "CDP_PORT": ("cdp_port", int),
        "CHROME_BIN": ("chrome_bin", str),
        "CHROME_USER_DATA_DIR": ("user_data_dir", str),
        "EXPORTER_HOST": ("listen_host", str),
        "PORT": ("listen_port", int),
        "EXPORTER_PREFIX": ("metric_prefix", str),
        "EXPORTER_NAMING": ("naming", str),
        "EXPORTER_SELECTOR": ("selector", str),
        "EXPORTER_SNAPSHOT_TIMEOUT": ("snapshot_timeout", float),
        "EXPORTER_LOAD_TIMEOUT": ("load_timeout", float),
        "EXPORTER_MUTATION_THRESHOLD": ("mutation_threshold", int),
        "CDP_TIMEOUT": ("timeout", float),
        "CDP_MAX_SIZE": ("max_size", int),
        "EXPORTER_LOG_LEVEL": ("log_level", str),
        "EXPORTER_LOG_FORMAT": ("log_format", str),
    }

    def __init__(self):
        """Initialize configuration with default values."""
        self.target_url: str = self.DEFAULTS["target_url"]
        self.cdp_host: str = self.DEFAULTS["cdp_host"]
        self.cdp_port: int = self.DEFAULTS["cdp_port"]
        self.chrome_bin: Optional[str] = self.DEFAULTS["chrome_bin"]
        self.user_data_dir: Optional[str] = self.DEFAULTS["user_data_dir"]
        self.listen_host: str = self.DEFAULTS["listen_host"]
        self.listen_port: int = self.DEFAULTS["listen_port"]
        self.metric_prefix: str = self.DEFAULTS["metric_prefix"]
        self.naming: str = self.DEFAULTS["naming"]
        self.selector: str = self.DEFAULTS["selector"]
        self.snapshot_timeout: float = self.DEFAULTS["snapshot_timeout"]
        self.load_timeout: float = self.DEFAULTS["load_timeout"]
        self.mutation_threshold: int = self.DEFAULTS["mutation_threshold"]
        self.timeout: float = self.DEFAULTS["timeout"]
        self.max_size: int = self.DEFAULTS["max_size"]
        self.log_level: str = self.DEFAULTS["log_level"]
        self.log_format: str = self.DEFAULTS["log_format"]

    def load_from_file(self, file_path: str) -> None:
        """Load configuration from JSON file.

        Args:
            file_path: Path to config file (typically ~/.dishyrc)

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
            logger.warning(f"Error reading config file {path}: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Config file {path} must contain a JSON object")
            return

        self._merge_dict(data)
        logger.info(f"Loaded configuration from {path}")

    def load_from_env(self, environ: Optional[dict] = None) -> None:
        """Load configuration from environment variables (see ENV_MAPPINGS).

        Invalid values are ignored with a warning log.
        """
        environ = os.environ if environ is None else environ

        for env_var, (attr_name, type_converter) in self.ENV_MAPPINGS.items():
            value = environ.get(env_var)
            if value is None or value == "":
                continue
            try:
                converted_value = type_converter(value)
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid value for {env_var}: {value} ({e})")
                continue
            setattr(self, attr_name, converted_value)
            logger.debug(f"Loaded {attr_name}={converted_value} from {env_var}")

    def merge(self, **kwargs) -> None:
        """Merge CLI arguments into configuration (highest precedence).

        Example:
            >>> config.merge(cdp_port=9333, snapshot_timeout=5.0)
        """
        self._merge_dict(kwargs)

    def _merge_dict(self, data: dict) -> None:
        for key, value in data.items():
            if key in self.DEFAULTS and value is not None:
                setattr(self, key, value)
                logger.debug(f"Set {key}={value}")

    def to_dict(self) -> dict:
        """Export configuration as dictionary."""
        return {key: getattr(self, key) for key in self.DEFAULTS}

    def __repr__(self) -> str:
        return f"Configuration({self.to_dict()})"
