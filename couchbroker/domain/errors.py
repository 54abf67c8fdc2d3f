"""
Error taxonomy surfaced to RPC callers.

Every failure that reaches a caller is one of three kinds:
``InvalidArgs`` (malformed input, unknown user or path), ``AccessDenied``
(authorization refused) or ``Failed`` (a well-formed request that could
not be completed, including external tool timeouts).
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for errors reported to RPC callers."""

    kind = "Failed"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidArgs(BrokerError):
    """Raised when input validation fails or a referenced entity is absent."""

    kind = "InvalidArgs"


class AccessDenied(BrokerError):
    """Raised when the authorization gate or a safety rule refuses a call."""

    kind = "AccessDenied"


class OperationFailed(BrokerError):
    """Raised when a valid request could not be carried out."""

    kind = "Failed"
