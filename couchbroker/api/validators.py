"""
Request payload validation for the API.
"""

import base64
import binascii
from typing import Any

from flask import request

from couchbroker.domain.errors import InvalidArgs


def get_payload() -> dict:
    """
    Return the JSON body of the current request.

    Raises:
        InvalidArgs: If the body is present but not a JSON object
    """
    data = request.get_json(silent=True)
    if data is None:
        if request.data:
            raise InvalidArgs("Request body must be JSON")
        return {}
    if not isinstance(data, dict):
        raise InvalidArgs("Request body must be a JSON object")
    return data


def require_str(data: dict, field: str, allow_empty: bool = False) -> str:
    value = data.get(field)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise InvalidArgs(f"'{field}' must be a non-empty string")
    return value


def optional_str(data: dict, field: str, default: str = "") -> str:
    value = data.get(field, default)
    if not isinstance(value, str):
        raise InvalidArgs(f"'{field}' must be a string")
    return value


def require_uid(data: dict, field: str = "uid") -> int:
    """
    Validate a numeric account id.

    Raises:
        InvalidArgs: If the value is missing, not an integer, or negative
    """
    value = data.get(field)
    # bool is an int subclass; true/false are not uids
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgs(f"'{field}' must be a non-negative integer")
    return value


def optional_bool(data: dict, field: str, default: bool = False) -> bool:
    value = data.get(field, default)
    if not isinstance(value, bool):
        raise InvalidArgs(f"'{field}' must be a boolean")
    return value


def require_str_list(data: dict, field: str, allow_empty: bool = True) -> list[str]:
    value = data.get(field, [] if allow_empty else None)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidArgs(f"'{field}' must be a list of strings")
    if not allow_empty and not value:
        raise InvalidArgs(f"'{field}' must not be empty")
    return value


def decode_base64(data: dict, field: str) -> bytes:
    """Decode a base64 payload field."""
    value: Any = data.get(field)
    if not isinstance(value, str):
        raise InvalidArgs(f"'{field}' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidArgs(f"'{field}' is not valid base64")
