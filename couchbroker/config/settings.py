"""
Constants and settings for the privileged broker.
"""

import os
import re

# =============================================================================
# Constants
# =============================================================================

# Account names accepted for creation and lookups (shadow-utils compatible)
USERNAME_PATTERN = re.compile(r'^[a-z][a-z0-9_-]{0,31}$')
MAX_USERNAME_LENGTH = 32

# GECOS field must not break /etc/passwd
FULL_NAME_FORBIDDEN = re.compile(r'[:\n\r\x00]')
MAX_FULL_NAME_LENGTH = 255

# VAR=value entries passed to launched instances
ENV_ENTRY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*=')

# Default ownership of a released input device
DEVICE_DEFAULT_MODE = 0o660
DEVICE_OWNED_MODE = 0o600

# polkit actions (one per privileged operation family)
ACTION_PREFIX = "io.github.hikaps.couchplay"
ACTION_DEVICE_OWNER = f"{ACTION_PREFIX}.change-device-owner"
ACTION_CREATE_USER = f"{ACTION_PREFIX}.create-user"
ACTION_DELETE_USER = f"{ACTION_PREFIX}.delete-user"
ACTION_ENABLE_LINGER = f"{ACTION_PREFIX}.enable-linger"
ACTION_RUNTIME_ACCESS = f"{ACTION_PREFIX}.setup-runtime-access"
ACTION_MOUNT = f"{ACTION_PREFIX}.mount-shared-directories"
ACTION_LAUNCH = f"{ACTION_PREFIX}.launch-instance"
ACTION_USER_FILES = f"{ACTION_PREFIX}.manage-user-files"
ACTION_READ_USER_DATA = f"{ACTION_PREFIX}.read-user-data"


def get_env(key: str, default: str = None, required: bool = False) -> str:
    """
    Retrieve a configuration value from the environment.

    Keys are looked up upper-cased with a ``COUCHPLAY_`` prefix, so
    ``get_env("config_path")`` reads ``COUCHPLAY_CONFIG_PATH``.

    Args:
        key: Configuration key
        default: Default value
        required: Whether the value is required

    Returns:
        Configuration value

    Raises:
        ValueError: If required value is missing
    """
    env_key = "COUCHPLAY_" + key.upper().replace("-", "_")
    value = os.environ.get(env_key, default)
    if required and not value:
        raise ValueError(f"Required configuration missing: {key}")
    return value
