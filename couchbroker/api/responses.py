"""
API response helpers for standardized responses.
"""

from typing import Any

from flask import jsonify, Response

from couchbroker.domain.errors import BrokerError

# Error kind -> HTTP status
KIND_STATUS = {
    "InvalidArgs": 400,
    "AccessDenied": 403,
    "Failed": 500,
}


def api_success(data: Any = None, message: str = None, status_code: int = 200) -> tuple[Response, int]:
    """
    Create a standardized success API response.

    Args:
        data: Response data (``False`` and ``0`` are kept)
        message: Optional success message
        status_code: HTTP status code

    Returns:
        Tuple of (response, status_code)
    """
    response = {"success": True}
    if data is not None:
        response["data"] = data
    if message:
        response["message"] = message
    return jsonify(response), status_code


def api_error(message: str, status_code: int = 400, kind: str = None) -> tuple[Response, int]:
    """
    Create a standardized error API response.

    Args:
        message: Error message
        status_code: HTTP status code
        kind: Error category (InvalidArgs, AccessDenied, Failed)

    Returns:
        Tuple of (response, status_code)
    """
    response = {"success": False, "error": message}
    if kind:
        response["kind"] = kind
    return jsonify(response), status_code


def error_response(error: BrokerError) -> tuple[Response, int]:
    """Convert a broker error into its response."""
    return api_error(error.message, KIND_STATUS.get(error.kind, 500), kind=error.kind)
