"""
Configuration management for sbclient.

Handles loading, validation, and access to client, emulator and logging settings,
plus connection string parsing.

Configuration precedence (highest to lowest):
1. CLI arguments
2. Environment variables (SBCLIENT_*)
3. Configuration file (YAML/JSON)
4. Defaults
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import CURRENT_API_VERSION, DEFAULT_PAGE_SIZE, DEFAULT_REQUEST_TIMEOUT, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(use_enum_values=True)

    level: LogLevel = LogLevel.INFO
    format: str = "json"


class ClientConfig(BaseModel):
    """Management client configuration."""
    endpoint: Optional[str] = Field(
        default=None,
        description="Namespace host, e.g. 'contoso.servicebus.windows.net'"
    )
    api_version: str = CURRENT_API_VERSION
    max_page_size: Optional[int] = Field(default=None, ge=1, le=MAX_PAGE_SIZE)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0.0)


class RuleSeed(BaseModel):
    """Rule created when the emulator starts."""
    name: str
    sql_filter: Optional[str] = None


class SubscriptionSeed(BaseModel):
    """Subscription created when the emulator starts."""
    name: str
    requires_session: bool = False
    lock_duration: int = Field(default=60, ge=1)
    max_delivery_count: int = Field(default=10, ge=1)
    rules: List[RuleSeed] = Field(default_factory=list)


class TopicSeed(BaseModel):
    """Topic created when the emulator starts."""
    name: str
    subscriptions: List[SubscriptionSeed] = Field(default_factory=list)


class QueueSeed(BaseModel):
    """Queue created when the emulator starts."""
    name: str
    requires_session: bool = False
    lock_duration: int = Field(default=60, ge=1)
    max_delivery_count: int = Field(default=10, ge=1)


class EmulatorConfig(BaseModel):
    """In-memory emulator configuration."""
    namespace: str = "localhost"
    host: str = "127.0.0.1"
    port: int = 8000
    default_page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    queues: List[QueueSeed] = Field(default_factory=list)
    topics: List[TopicSeed] = Field(default_factory=list)


class Settings(BaseModel):
    """Top-level sbclient configuration schema."""

    client: ClientConfig = Field(default_factory=ClientConfig)
    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(use_enum_values=True)


class ConfigManager:
    """Loads and validates sbclient settings from file, environment and CLI overrides."""

    def __init__(self):
        self._settings: Optional[Settings] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> Settings:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated Settings instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)

        try:
            self._settings = Settings(**config_dict)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise
        return self._settings

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        if connection_string := os.getenv("SBCLIENT_CONNECTION_STRING"):
            config.setdefault("client", {})["endpoint"] = parse_connection_string(connection_string)["endpoint"]
        if endpoint := os.getenv("SBCLIENT_ENDPOINT"):
            config.setdefault("client", {})["endpoint"] = endpoint
        if api_version := os.getenv("SBCLIENT_API_VERSION"):
            config.setdefault("client", {})["api_version"] = api_version
        if page_size := os.getenv("SBCLIENT_MAX_PAGE_SIZE"):
            config.setdefault("client", {})["max_page_size"] = int(page_size)
        if timeout := os.getenv("SBCLIENT_REQUEST_TIMEOUT"):
            config.setdefault("client", {})["request_timeout"] = float(timeout)

        if namespace := os.getenv("SBCLIENT_EMULATOR_NAMESPACE"):
            config.setdefault("emulator", {})["namespace"] = namespace
        if port := os.getenv("SBCLIENT_EMULATOR_PORT"):
            config.setdefault("emulator", {})["port"] = int(port)

        if log_level := os.getenv("SBCLIENT_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_format := os.getenv("SBCLIENT_LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result


def load_settings(
    config_file: Optional[str] = None,
    cli_overrides: Optional[Dict[str, Any]] = None
) -> Settings:
    """Load settings with a throwaway ConfigManager."""
    return ConfigManager().load(config_file=config_file, cli_overrides=cli_overrides)


def parse_connection_string(connection_string: str) -> Dict[str, Optional[str]]:
    """
    Parse a Service Bus connection string.

    Example::

        Endpoint=sb://contoso.servicebus.windows.net/;SharedAccessKeyName=Root;SharedAccessKey=abc=

    Returns:
        Dict with ``endpoint`` (host[:port]), ``shared_access_key_name``,
        ``shared_access_key`` and ``entity_path``

    Raises:
        ValueError: The string has no usable Endpoint
    """
    parts: Dict[str, str] = {}
    for segment in connection_string.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        key, sep, value = segment.partition("=")
        if not sep:
            raise ValueError(f"Malformed connection string segment: {segment!r}")
        parts[key.strip().lower()] = value.strip()

    raw_endpoint = parts.get("endpoint")
    if not raw_endpoint:
        raise ValueError("Connection string is missing 'Endpoint'")

    endpoint = urlsplit(raw_endpoint).netloc if "://" in raw_endpoint else raw_endpoint.strip("/")
    if not endpoint:
        raise ValueError(f"Connection string has an invalid Endpoint: {raw_endpoint!r}")

    return {
        "endpoint": endpoint,
        "shared_access_key_name": parts.get("sharedaccesskeyname"),
        "shared_access_key": parts.get("sharedaccesskey"),
        "entity_path": parts.get("entitypath"),
    }
