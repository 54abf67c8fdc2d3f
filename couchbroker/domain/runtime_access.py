"""
Shared-group ACL grants on a compositor's runtime directory.

Secondary players run as other accounts but must reach the compositor
user's display and audio sockets. Instead of widening ownership, the
broker adds ACL entries for the shared group on exactly the paths a client
needs and removes them again when the session ends.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass

from couchbroker.config.models import RuntimeAccessConfig
from couchbroker.config.settings import ACTION_RUNTIME_ACCESS
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import InvalidArgs, OperationFailed
from couchbroker.domain.system.base import AccountDatabase, CommandRunner, FileSystem
from couchbroker.domain.types import RuntimeGrant

logger = logging.getLogger("couchplay-broker")


@dataclass(frozen=True)
class AclEntry:
    """One path of the grant plan."""

    path: str
    perms: str
    required: bool = False
    # Audio directories are usually 0700; the group entry is only
    # effective once the mask allows it too.
    set_mask: bool = False


class RuntimeAccessManager:
    """Grants and revokes group access to per-session sockets."""

    def __init__(
        self,
        gate: AuthorizationGate,
        runner: CommandRunner,
        accounts: AccountDatabase,
        fs: FileSystem,
        config: RuntimeAccessConfig,
        timeout: float = 5.0,
    ) -> None:
        self._gate = gate
        self._runner = runner
        self._accounts = accounts
        self._fs = fs
        self._config = config
        self._timeout = timeout
        self._grants: dict[int, RuntimeGrant] = {}

    @property
    def grants(self) -> list[RuntimeGrant]:
        return list(self._grants.values())

    def runtime_dir(self, uid: int) -> str:
        return os.path.join(self._config.runtime_root, str(uid))

    def _plan(self, uid: int) -> list[AclEntry]:
        """Entries to grant for *uid*, in application order.

        Optional entries whose path is absent are left out.
        """
        runtime_dir = self.runtime_dir(uid)
        plan = [
            AclEntry(runtime_dir, "x", required=True),
            AclEntry(os.path.join(runtime_dir, self._config.display_socket), "rw", required=True),
        ]

        audio_dir = os.path.join(runtime_dir, self._config.audio_dir)
        if self._fs.is_dir(audio_dir):
            plan.append(AclEntry(audio_dir, "x", set_mask=True))

        for socket in self._config.audio_sockets:
            socket_path = os.path.join(runtime_dir, socket)
            if self._fs.exists(socket_path):
                plan.append(AclEntry(socket_path, "rw"))

        try:
            names = self._fs.list_dir(runtime_dir)
        except OSError:
            names = []
        for name in names:
            if any(fnmatch.fnmatch(name, pattern) for pattern in self._config.xauth_patterns):
                xauth_path = os.path.join(runtime_dir, name)
                if self._fs.is_file(xauth_path):
                    plan.append(AclEntry(xauth_path, "r"))

        return plan

    def _grant_entry(self, entry: AclEntry) -> tuple[bool, str]:
        spec = f"g:{self._config.group}:{entry.perms}"
        if entry.set_mask:
            spec += f",m::{entry.perms}"
        result = self._runner.run("setfacl", ["-m", spec, entry.path], self._timeout)
        return result.ok, result.error_output

    def _revoke_entry(self, entry: AclEntry) -> tuple[bool, str]:
        result = self._runner.run(
            "setfacl", ["-x", f"g:{self._config.group}", entry.path], self._timeout
        )
        return result.ok, result.error_output

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def setup_access(self, compositor_uid: int) -> bool:
        """
        Grant the shared group access to the sockets of *compositor_uid*.

        Raises:
            AccessDenied: If the gate refuses
            InvalidArgs: If the compositor account does not exist
            OperationFailed: If the runtime directory or display socket is
                missing, or a required ACL could not be set (already
                applied entries are rolled back)
        """
        self._gate.require(ACTION_RUNTIME_ACCESS, "Not authorized to set up runtime access")
        return self.ensure_access(compositor_uid)

    def ensure_access(self, compositor_uid: int) -> bool:
        """Grant without authorization; used by services that already checked."""
        if compositor_uid in self._grants:
            return True

        if self._accounts.lookup_account_by_uid(compositor_uid) is None:
            raise InvalidArgs(f"Compositor user with UID {compositor_uid} does not exist")
        if self._accounts.lookup_group(self._config.group) is None:
            raise OperationFailed(f"Group '{self._config.group}' does not exist")

        runtime_dir = self.runtime_dir(compositor_uid)
        if not self._fs.is_dir(runtime_dir):
            raise OperationFailed(f"Runtime directory {runtime_dir} does not exist")
        display_socket = os.path.join(runtime_dir, self._config.display_socket)
        if not self._fs.exists(display_socket):
            raise OperationFailed(f"Display socket {display_socket} does not exist")

        applied: list[AclEntry] = []
        for entry in self._plan(compositor_uid):
            ok, error = self._grant_entry(entry)
            if ok:
                applied.append(entry)
                continue
            if entry.required:
                for done in reversed(applied):
                    self._revoke_entry(done)
                raise OperationFailed(f"Failed to set ACL on {entry.path}: {error}")
            logger.warning(f"Failed to set ACL on {entry.path}: {error}")

        self._grants[compositor_uid] = RuntimeGrant(compositor_uid=compositor_uid)
        logger.info(
            f"Granted group {self._config.group} access to {runtime_dir} "
            f"({len(applied)} entries)"
        )
        return True

    def remove_access(self, compositor_uid: int) -> bool:
        """
        Remove the shared-group entries for *compositor_uid*.

        Returns False if a required entry still exists but could not be
        cleaned. The grant is forgotten either way.
        """
        self._gate.require(ACTION_RUNTIME_ACCESS, "Not authorized to remove runtime access")
        return self._revoke(compositor_uid)

    def _revoke(self, compositor_uid: int) -> bool:
        success = True
        if self._fs.is_dir(self.runtime_dir(compositor_uid)):
            for entry in reversed(self._plan(compositor_uid)):
                if not self._fs.exists(entry.path):
                    continue
                ok, error = self._revoke_entry(entry)
                if ok:
                    continue
                logger.warning(f"Failed to remove ACL from {entry.path}: {error}")
                if entry.required:
                    success = False

        self._grants.pop(compositor_uid, None)
        return success

    def release_all(self) -> int:
        """Revoke every grant still held; returns how many were clean."""
        cleaned = 0
        for uid in list(self._grants):
            if self._revoke(uid):
                cleaned += 1
        return cleaned
