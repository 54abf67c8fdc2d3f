"""Configuration module for the privileged broker."""

from couchbroker.config.settings import (
    USERNAME_PATTERN,
    MAX_USERNAME_LENGTH,
    FULL_NAME_FORBIDDEN,
    MAX_FULL_NAME_LENGTH,
    ENV_ENTRY_PATTERN,
    DEVICE_DEFAULT_MODE,
    DEVICE_OWNED_MODE,
    get_env,
)
from couchbroker.config.loader import (
    BrokerConfig,
    CONFIG_PATH,
    BROKER_CONFIG_FILE,
)
from couchbroker.config.models import BrokerSettings

__all__ = [
    "USERNAME_PATTERN",
    "MAX_USERNAME_LENGTH",
    "FULL_NAME_FORBIDDEN",
    "MAX_FULL_NAME_LENGTH",
    "ENV_ENTRY_PATTERN",
    "DEVICE_DEFAULT_MODE",
    "DEVICE_OWNED_MODE",
    "get_env",
    "BrokerConfig",
    "BrokerSettings",
    "CONFIG_PATH",
    "BROKER_CONFIG_FILE",
]
