"""
Audit logging for privileged API actions.

Logs all write operations (POST, PUT, DELETE) as structured JSON to stdout
via a dedicated 'audit' logger, including the caller's kernel-reported
credentials. GET requests are not audited.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from flask import g, request, Response

# Dedicated audit logger
audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)
audit_logger.propagate = False

_handler = logging.StreamHandler(sys.stdout)


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(record.msg, ensure_ascii=False)


_handler.setFormatter(_JsonFormatter())
audit_logger.addHandler(_handler)

AUDIT_METHODS = frozenset({"POST", "PUT", "DELETE"})

# /api/users/<username>/...
_USERNAME_RE = re.compile(r"/api/users/([^/]+)")


def audit_log_response(response: Response) -> Response:
    """
    after_request hook that logs privileged actions (POST/PUT/DELETE).

    Attach to a Blueprint via: blueprint.after_request(audit_log_response)
    """
    if request.method not in AUDIT_METHODS:
        return response

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "broker_action",
        "method": request.method,
        "path": request.path,
        "endpoint": request.endpoint,
        "status_code": response.status_code,
    }

    caller = g.get("caller")
    if caller is not None:
        entry["caller_uid"] = caller.uid
        entry["caller_pid"] = caller.pid

    match = _USERNAME_RE.search(request.path)
    if match:
        entry["username"] = match.group(1)

    audit_logger.info(entry)
    return response
