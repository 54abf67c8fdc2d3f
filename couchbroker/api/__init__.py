"""API module for Flask routes and helpers."""

from couchbroker.api.responses import api_success, api_error, error_response
from couchbroker.api.auth import identify_caller, current_caller, peer_credentials

__all__ = [
    "api_success",
    "api_error",
    "error_response",
    "identify_caller",
    "current_caller",
    "peer_credentials",
]
