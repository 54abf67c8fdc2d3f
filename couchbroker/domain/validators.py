"""
Input validation shared by the managers.
"""

import os

from couchbroker.config.settings import (
    USERNAME_PATTERN,
    MAX_USERNAME_LENGTH,
    FULL_NAME_FORBIDDEN,
    MAX_FULL_NAME_LENGTH,
    ENV_ENTRY_PATTERN,
)
from couchbroker.domain.errors import InvalidArgs


def validate_username(username: str) -> str:
    """
    Validate an account name.

    Args:
        username: The username to validate

    Returns:
        The username, unchanged

    Raises:
        InvalidArgs: If username is empty or malformed
    """
    if not username:
        raise InvalidArgs("Username is required")

    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidArgs(f"Username exceeds maximum length of {MAX_USERNAME_LENGTH}")

    if not USERNAME_PATTERN.fullmatch(username):
        raise InvalidArgs("Invalid username format")

    return username


def validate_full_name(full_name: str) -> str:
    """
    Validate the GECOS full name of a new account.

    Raises:
        InvalidArgs: If the name would corrupt the passwd entry
    """
    if len(full_name) > MAX_FULL_NAME_LENGTH:
        raise InvalidArgs(f"Full name exceeds maximum length of {MAX_FULL_NAME_LENGTH}")

    if FULL_NAME_FORBIDDEN.search(full_name):
        raise InvalidArgs("Full name contains invalid characters")

    return full_name


def validate_env_entries(entries: list[str]) -> list[str]:
    """
    Validate ``VAR=value`` environment entries.

    Raises:
        InvalidArgs: If an entry has no valid variable name
    """
    for entry in entries:
        if not ENV_ENTRY_PATTERN.match(entry) or "\x00" in entry:
            raise InvalidArgs(f"Invalid environment entry: {entry.split('=', 1)[0]!r}")
    return entries


def has_traversal(path: str) -> bool:
    """True if *path* contains a ``..`` segment."""
    return ".." in path.split("/")


def is_within(path: str, root: str) -> bool:
    """
    Lexical containment check on normalized absolute paths.

    Args:
        path: Candidate path
        root: Directory that must contain it

    Returns:
        True if *path* equals *root* or lies below it
    """
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(root + "/")
