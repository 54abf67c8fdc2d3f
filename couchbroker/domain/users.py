"""
Lifecycle of managed player accounts.

Only accounts in the managed group may be deleted or written into. That
group membership is the one criterion separating player accounts from
every other account on the machine.
"""

from __future__ import annotations

import logging
import os
import time

from couchbroker.config.models import AccountsConfig, TimeoutsConfig
from couchbroker.config.settings import (
    ACTION_CREATE_USER,
    ACTION_DELETE_USER,
    ACTION_ENABLE_LINGER,
)
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import AccessDenied, InvalidArgs, OperationFailed
from couchbroker.domain.system.base import AccountDatabase, CommandRunner, FileSystem
from couchbroker.domain.types import ManagedAccount
from couchbroker.domain.validators import validate_full_name, validate_username

logger = logging.getLogger("couchplay-broker")

# /proc/sysvipc file -> ipcrm flag
IPC_KINDS = {"shm": "-m", "sem": "-s", "msg": "-q"}


class UserLifecycleManager:
    """Creates, inspects and deletes managed accounts."""

    def __init__(
        self,
        gate: AuthorizationGate,
        runner: CommandRunner,
        accounts: AccountDatabase,
        fs: FileSystem,
        config: AccountsConfig,
        timeouts: TimeoutsConfig,
    ) -> None:
        self._gate = gate
        self._runner = runner
        self._accounts = accounts
        self._fs = fs
        self._config = config
        self._timeouts = timeouts

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_in_managed_group(self, username: str) -> bool:
        """True if *username* is a declared member of the managed group or has it as primary group."""
        validate_username(username)
        group = self._accounts.lookup_group(self._config.managed_group)
        if group is None:
            return False
        if username in group.members:
            return True
        account = self._accounts.lookup_account(username)
        return account is not None and account.gid == group.gid

    def get_managed_account(self, username: str) -> ManagedAccount:
        """
        Resolve *username* to a managed account.

        Raises:
            InvalidArgs: If the account does not exist
            AccessDenied: If it is not in the managed group
        """
        validate_username(username)
        account = self._accounts.lookup_account(username)
        if account is None:
            raise InvalidArgs(f"User '{username}' does not exist")
        if not self.is_in_managed_group(username):
            raise AccessDenied(f"User '{username}' is not managed by CouchPlay")
        return ManagedAccount(username=account.username, uid=account.uid, home_dir=account.home_dir)

    def is_managed_uid(self, uid: int) -> bool:
        account = self._accounts.lookup_account_by_uid(uid)
        return account is not None and self.is_in_managed_group(account.username)

    def is_linger_enabled(self, username: str) -> bool:
        validate_username(username)
        return self._fs.exists(os.path.join(self._config.linger_dir, username))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_user(self, username: str, full_name: str) -> int:
        """
        Create a managed account with a home directory.

        Args:
            username: Login name
            full_name: GECOS display name

        Returns:
            The new account's uid

        Raises:
            AccessDenied: If the gate refuses
            InvalidArgs: If username or full name is malformed
            OperationFailed: If the account exists or creation fails
        """
        self._gate.require(ACTION_CREATE_USER, "Not authorized to create users")
        validate_username(username)
        validate_full_name(full_name)

        if self._accounts.lookup_account(username) is not None:
            raise OperationFailed(f"User '{username}' already exists")

        self._ensure_managed_group()

        groups = [self._config.managed_group]
        if self._accounts.lookup_group(self._config.input_group) is not None:
            groups.insert(0, self._config.input_group)
        else:
            logger.warning(f"Group {self._config.input_group} missing, {username} gets no device access group")

        result = self._runner.run(
            "useradd",
            ["-m", "-c", full_name, "-s", self._config.shell, "-G", ",".join(groups), username],
            self._timeouts.account,
        )
        if not result.ok:
            raise OperationFailed(f"Failed to create user: {result.error_output}")

        account = self._accounts.lookup_account(username)
        if account is None:
            raise OperationFailed("User created but could not retrieve UID")

        # Linger can be enabled again later; it never fails creation
        linger = self._runner.run("loginctl", ["enable-linger", username], self._timeouts.account)
        if not linger.ok:
            logger.warning(f"Failed to enable linger for {username}: {linger.error_output}")

        logger.info(f"Created managed user {username} (uid {account.uid})")
        return account.uid

    def _ensure_managed_group(self) -> None:
        if self._accounts.lookup_group(self._config.managed_group) is not None:
            return
        result = self._runner.run(
            "groupadd", ["--system", self._config.managed_group], self._timeouts.account
        )
        # 9: group already exists (created concurrently by another tool)
        if not result.ok and result.exit_code != 9:
            raise OperationFailed(
                f"Failed to create group {self._config.managed_group}: {result.error_output}"
            )

    def enable_linger(self, username: str) -> bool:
        self._gate.require(ACTION_ENABLE_LINGER, "Not authorized to enable linger")
        validate_username(username)
        if self._accounts.lookup_account(username) is None:
            raise InvalidArgs(f"User '{username}' does not exist")

        result = self._runner.run("loginctl", ["enable-linger", username], self._timeouts.account)
        if not result.ok:
            raise OperationFailed(f"Failed to enable linger: {result.error_output}")
        logger.info(f"Enabled linger for user {username}")
        return True

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_user(self, username: str, remove_home: bool, caller_uid: int | None = None) -> bool:
        """
        Delete a managed account and everything it still holds.

        Raises:
            AccessDenied: If the gate refuses, the account is not managed,
                or it is the caller's own account
            InvalidArgs: If the account does not exist
            OperationFailed: If ``userdel`` fails
        """
        self._gate.require(ACTION_DELETE_USER, "Not authorized to delete users")
        validate_username(username)

        account = self._accounts.lookup_account(username)
        if account is None:
            raise InvalidArgs(f"User '{username}' does not exist")
        if not self.is_in_managed_group(username):
            raise AccessDenied(f"Refusing to delete '{username}': not a CouchPlay managed user")
        if caller_uid is not None and account.uid == caller_uid:
            raise AccessDenied("Refusing to delete the calling user")

        uid = account.uid
        quick = self._timeouts.quick

        result = self._runner.run("loginctl", ["disable-linger", username], self._timeouts.account)
        if not result.ok:
            logger.warning(f"Failed to disable linger for {username}: {result.error_output}")

        self._terminate_processes(uid, quick)
        removed_ipc = self._purge_ipc(uid)
        self._purge_temp_files(uid)

        args = ["-r", username] if remove_home else [username]
        result = self._runner.run("userdel", args, self._timeouts.account)
        if not result.ok:
            raise OperationFailed(f"Failed to delete user: {result.error_output}")

        logger.info(f"Deleted managed user {username} (uid {uid}, {removed_ipc} IPC objects purged)")
        return True

    def _terminate_processes(self, uid: int, timeout: float) -> None:
        # pkill exits 1 when nothing matched
        result = self._runner.run("pkill", ["-TERM", "-u", str(uid)], timeout)
        if result.exit_code not in (0, 1):
            logger.warning(f"pkill -TERM for uid {uid} failed: {result.error_output}")
            return
        if result.exit_code == 0:
            time.sleep(self._config.termination_grace)
            self._runner.run("pkill", ["-KILL", "-u", str(uid)], timeout)

    def _purge_ipc(self, uid: int) -> int:
        """Remove System V IPC objects owned by *uid*; returns the count removed."""
        removed = 0
        for kind, flag in IPC_KINDS.items():
            path = os.path.join(self._config.sysvipc_dir, kind)
            try:
                lines = self._fs.read_text(path).splitlines()
            except OSError:
                continue
            if not lines:
                continue
            header = lines[0].split()
            if "uid" not in header:
                continue
            uid_col = header.index("uid")
            for line in lines[1:]:
                fields = line.split()
                if len(fields) <= uid_col or fields[uid_col] != str(uid):
                    continue
                ipc_id = fields[1]
                result = self._runner.run("ipcrm", [flag, ipc_id], self._timeouts.quick)
                if result.ok:
                    removed += 1
                else:
                    logger.warning(f"ipcrm {flag} {ipc_id} failed: {result.error_output}")
        return removed

    def _purge_temp_files(self, uid: int) -> None:
        for directory in self._config.temp_dirs:
            if not self._fs.is_dir(directory):
                continue
            result = self._runner.run(
                "find",
                [directory, "-xdev", "-mindepth", "1", "-uid", str(uid), "-delete"],
                self._timeouts.recursive,
            )
            if not result.ok:
                logger.warning(f"Temp cleanup in {directory} for uid {uid} incomplete: {result.error_output}")
