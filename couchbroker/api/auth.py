"""
Caller identification for the broker API.

The broker listens on a Unix socket only. The kernel reports the pid, uid
and gid of the connecting process (SO_PEERCRED); those credentials are the
subject of every authorization check.

Fail-closed: a request whose peer cannot be identified is refused.
"""

from __future__ import annotations

import logging
import socket
import struct

from flask import Response, g, has_request_context, request

from couchbroker.api.responses import api_error
from couchbroker.domain.types import CallerIdentity

logger = logging.getLogger("couchplay-broker")

# Endpoints that do not require an identified caller (Flask endpoint names)
PUBLIC_ENDPOINTS = frozenset({"api.health", "api.version", "prometheus_metrics"})

# struct ucred { pid_t pid; uid_t uid; gid_t gid; }
_UCRED = struct.Struct("3i")


def peer_credentials() -> CallerIdentity | None:
    """
    Read the credentials of the peer of the current request's socket.

    Returns:
        CallerIdentity, or None if the request did not arrive over a Unix
        socket served by gunicorn.
    """
    sock = request.environ.get("gunicorn.socket")
    if sock is None or getattr(sock, "family", None) != socket.AF_UNIX:
        return None
    try:
        raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _UCRED.size)
    except OSError as e:
        logger.warning(f"SO_PEERCRED failed: {e}")
        return None
    pid, uid, gid = _UCRED.unpack(raw)
    if pid <= 0:
        return None
    return CallerIdentity(pid=pid, uid=uid, gid=gid)


def current_caller() -> CallerIdentity | None:
    """Caller of the request being served, or None outside a request."""
    if not has_request_context():
        return None
    return g.get("caller")


def identify_caller() -> tuple[Response, int] | None:
    """
    Flask before_request hook that records the caller in ``g.caller``.

    - Skips public endpoints (health, version, metrics).
    - Returns 403 if the peer cannot be identified.
    - Returns None (allows request) otherwise.
    """
    caller = peer_credentials()
    g.caller = caller

    if request.endpoint in PUBLIC_ENDPOINTS:
        return None

    if caller is None:
        logger.warning(f"Unidentified caller rejected on {request.path}")
        return api_error("Caller credentials unavailable", 403, kind="AccessDenied")

    return None
