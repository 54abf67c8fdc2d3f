"""
Configuration loader for broker.yml.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import yaml
from pydantic import ValidationError

from couchbroker.config.models import BrokerSettings
from couchbroker.config.settings import get_env

logger = logging.getLogger("couchplay-broker")

# Configuration paths
CONFIG_PATH = Path(get_env("config_path", "/etc/couchplay-broker") or "/etc/couchplay-broker")
BROKER_CONFIG_FILE = CONFIG_PATH / "broker.yml"

# COUCHPLAY_<NAME> -> (section, key); applied over the file
ENV_OVERRIDES = {
    "socket_path": ("server", "socket_path"),
    "log_level": ("logging", "level"),
}


class BrokerConfig:
    """Broker configuration from broker.yml, read once per process.

    The broker runs as a system service and picks up edits on restart;
    :meth:`reload` forces a re-read. A file that fails to parse or to
    validate is ignored in favour of the built-in defaults.
    """

    _lock = threading.Lock()
    _config: dict = {}
    _typed_config: BrokerSettings | None = None

    @classmethod
    def load(cls) -> dict:
        if cls._config:
            return cls._config
        with cls._lock:
            if not cls._config:
                cls._typed_config = cls._read(BROKER_CONFIG_FILE)
                cls._config = cls._typed_config.model_dump()
        return cls._config

    @classmethod
    def _read(cls, path: Path) -> BrokerSettings:
        raw: dict = {}
        if path.exists():
            try:
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}
                if not isinstance(raw, dict):
                    raise ValueError("top level must be a mapping")
                logger.info(f"Loaded broker config from {path}")
            except (OSError, yaml.YAMLError, ValueError) as e:
                logger.error(f"Error loading broker config {path}: {e}")
                raw = {}
        else:
            logger.info(f"Broker config not found, using defaults: {path}")

        merged = cls._deep_merge(BrokerSettings().model_dump(), raw)
        for name, (section, key) in ENV_OVERRIDES.items():
            value = get_env(name)
            if value:
                merged[section][key] = value

        try:
            return BrokerSettings.model_validate(merged)
        except ValidationError as e:
            logger.error(f"Invalid broker config {path}, using defaults: {e}")
            return BrokerSettings()

    @classmethod
    def _deep_merge(cls, base: dict, override: dict) -> dict:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = cls._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    @classmethod
    def get(cls, *keys: str, default: object = None) -> object:
        """Get a nested config value using multiple keys."""
        config = cls.load()
        for key in keys:
            if isinstance(config, dict) and key in config:
                config = config[key]
            else:
                return default
        return config

    @classmethod
    def settings(cls) -> BrokerSettings:
        """Get typed configuration as a BrokerSettings instance."""
        cls.load()
        assert cls._typed_config is not None
        return cls._typed_config

    @classmethod
    def reload(cls) -> None:
        with cls._lock:
            cls._config = {}
            cls._typed_config = None
        cls.load()
