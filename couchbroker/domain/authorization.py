"""
Authorization gate in front of every privileged operation.

The decision itself belongs to polkit; the gate only asks ``pkcheck``
about the calling process and turns the answer into a bool.
"""

from __future__ import annotations

import logging
from typing import Callable

from couchbroker.domain.errors import AccessDenied
from couchbroker.domain.system.base import CommandRunner, FileSystem
from couchbroker.domain.types import CallerIdentity
from couchbroker.observability import AUTHORIZATION_DECISIONS

logger = logging.getLogger("couchplay-broker")

# pkcheck exit statuses
PKCHECK_AUTHORIZED = 0
PKCHECK_NOT_AUTHORIZED = 1
PKCHECK_CHALLENGE = 2
PKCHECK_DISMISSED = 3


class AuthorizationGate:
    """Polkit-backed yes/no check keyed by action id.

    Fail-closed: an unknown caller, an unreadable process start time or
    any pkcheck failure (including a timeout) denies.
    """

    def __init__(
        self,
        runner: CommandRunner,
        fs: FileSystem,
        subject_provider: Callable[[], CallerIdentity | None],
        timeout: float = 60.0,
        allow_user_interaction: bool = True,
    ) -> None:
        self._runner = runner
        self._fs = fs
        self._subject_provider = subject_provider
        self._timeout = timeout
        self._allow_user_interaction = allow_user_interaction

    def _process_start_time(self, pid: int) -> str | None:
        """Read field 22 of /proc/<pid>/stat (pins the pid against reuse)."""
        try:
            stat = self._fs.read_text(f"/proc/{pid}/stat")
        except OSError:
            return None
        # comm (field 2) may contain spaces and parentheses
        fields = stat.rpartition(")")[2].split()
        if len(fields) < 20:
            return None
        return fields[19]

    def authorize(self, action_id: str) -> bool:
        """Return True if the current caller may perform *action_id*."""
        subject = self._subject_provider()
        if subject is None:
            logger.warning(f"Authorization for {action_id} denied: caller unknown")
            AUTHORIZATION_DECISIONS.labels(action=action_id, result="denied").inc()
            return False

        start_time = self._process_start_time(subject.pid)
        if start_time is None:
            logger.warning(f"Authorization for {action_id} denied: pid {subject.pid} vanished")
            AUTHORIZATION_DECISIONS.labels(action=action_id, result="denied").inc()
            return False

        args = [
            "--action-id", action_id,
            "--process", f"{subject.pid},{start_time},{subject.uid}",
        ]
        if self._allow_user_interaction:
            args.append("--allow-user-interaction")

        result = self._runner.run("pkcheck", args, self._timeout)
        if result.ok:
            AUTHORIZATION_DECISIONS.labels(action=action_id, result="granted").inc()
            return True

        if result.exit_code == PKCHECK_CHALLENGE:
            reason = "authentication required"
        elif result.exit_code == PKCHECK_DISMISSED:
            reason = "authentication dialog dismissed"
        elif result.exit_code == PKCHECK_NOT_AUTHORIZED:
            reason = "not authorized"
        else:
            reason = result.error_output
        logger.info(f"Authorization for {action_id} denied to uid {subject.uid}: {reason}")
        AUTHORIZATION_DECISIONS.labels(action=action_id, result="denied").inc()
        return False

    def require(self, action_id: str, message: str) -> None:
        """Raise AccessDenied with *message* unless *action_id* is authorized."""
        if not self.authorize(action_id):
            raise AccessDenied(message)
