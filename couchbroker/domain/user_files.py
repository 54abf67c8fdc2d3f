"""
File operations inside managed accounts' homes.

Players get copies of the compositor user's configuration (controller
layouts, launcher settings) and read access to shared game folders. Every
write lands inside the target's home and is owned by the target account.
"""

from __future__ import annotations

import logging
import os
import stat

from couchbroker.config.models import TimeoutsConfig
from couchbroker.config.settings import ACTION_READ_USER_DATA, ACTION_USER_FILES
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import AccessDenied, InvalidArgs, OperationFailed
from couchbroker.domain.system.base import CommandRunner, FileSystem
from couchbroker.domain.types import ManagedAccount
from couchbroker.domain.users import UserLifecycleManager
from couchbroker.domain.validators import has_traversal, is_within

logger = logging.getLogger("couchplay-broker")

STEAM_USERDATA_DIRS = (".steam/steam/userdata", ".local/share/Steam/userdata")


class UserFilesManager:
    """Copies, writes and shares files on behalf of managed accounts."""

    def __init__(
        self,
        gate: AuthorizationGate,
        runner: CommandRunner,
        users: UserLifecycleManager,
        fs: FileSystem,
        timeouts: TimeoutsConfig,
    ) -> None:
        self._gate = gate
        self._runner = runner
        self._users = users
        self._fs = fs
        self._timeouts = timeouts

    # ------------------------------------------------------------------
    # Path checks
    # ------------------------------------------------------------------

    def _target_in_home(self, path: str, account: ManagedAccount) -> str:
        """
        Validate that *path* is a location strictly inside the account home.

        Symlinks are resolved for the deepest existing ancestor so a link
        planted in the home cannot redirect the write elsewhere.

        Raises:
            InvalidArgs: If the path is relative, traverses, or leaves the home
        """
        if not path or not os.path.isabs(path) or has_traversal(path):
            raise InvalidArgs(f"Invalid target path: {path}")
        path = os.path.normpath(path)
        home = os.path.normpath(account.home_dir)
        if path == home or not is_within(path, home):
            raise InvalidArgs(f"Target path {path} is outside the home of {account.username}")

        real_home = self._fs.real_path(home)
        if not is_within(self._fs.real_path(path), real_home):
            raise InvalidArgs(f"Target path {path} resolves outside the home of {account.username}")
        return path

    def _make_dirs(self, path: str, account: ManagedAccount, gid: int) -> None:
        home = os.path.normpath(account.home_dir)
        missing = []
        current = path
        while current != home and not self._fs.is_dir(current):
            if self._fs.exists(current):
                raise OperationFailed(f"{current} exists and is not a directory")
            missing.append(current)
            current = os.path.dirname(current)
        for directory in reversed(missing):
            self._fs.mkdir(directory, 0o755)
            self._fs.chown(directory, account.uid, gid, follow_symlinks=False)

    def _primary_gid(self, account: ManagedAccount) -> int:
        # The home directory carries the account's primary group
        try:
            return self._fs.stat(account.home_dir).gid
        except OSError as e:
            raise OperationFailed(f"Home of {account.username} is unavailable: {e.strerror or e}")

    def _require_owned_by_caller(self, path: str, caller_uid: int | None) -> None:
        try:
            info = self._fs.stat(path)
        except OSError:
            raise InvalidArgs(f"Path {path} does not exist")
        if caller_uid is not None and caller_uid != 0 and info.uid != caller_uid:
            raise AccessDenied(f"Path {path} is not owned by the caller")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def copy_file_to_user(
        self, source: str, target: str, username: str, caller_uid: int | None = None
    ) -> bool:
        """
        Copy *source* to *target* inside the home of *username*.

        The caller must be able to read *source* itself: it owns the file
        or the file is world-readable.
        """
        self._gate.require(ACTION_USER_FILES, "Not authorized to manage user files")
        account = self._users.get_managed_account(username)

        if not source or not os.path.isabs(source):
            raise InvalidArgs(f"Invalid source path: {source}")
        source = self._fs.real_path(source)
        if not self._fs.is_file(source):
            raise InvalidArgs(f"Source {source} is not a regular file")
        info = self._fs.stat(source)
        if caller_uid not in (None, 0) and info.uid != caller_uid and not info.mode & stat.S_IROTH:
            raise AccessDenied(f"Source {source} is not readable by the caller")

        target = self._target_in_home(target, account)
        gid = self._primary_gid(account)
        try:
            self._make_dirs(os.path.dirname(target), account, gid)
            self._fs.copy_file(source, target)
            self._fs.chown(target, account.uid, gid, follow_symlinks=False)
        except OSError as e:
            raise OperationFailed(f"Failed to copy {source} to {target}: {e.strerror or e}")
        logger.info(f"Copied {source} to {target} for {username}")
        return True

    def write_file_to_user(self, content: bytes, target: str, username: str) -> bool:
        self._gate.require(ACTION_USER_FILES, "Not authorized to manage user files")
        account = self._users.get_managed_account(username)
        target = self._target_in_home(target, account)
        gid = self._primary_gid(account)
        try:
            self._make_dirs(os.path.dirname(target), account, gid)
            self._fs.write_bytes(target, content)
            self._fs.chown(target, account.uid, gid, follow_symlinks=False)
        except OSError as e:
            raise OperationFailed(f"Failed to write {target}: {e.strerror or e}")
        logger.info(f"Wrote {len(content)} bytes to {target} for {username}")
        return True

    def create_user_directory(self, path: str, username: str) -> bool:
        """Create *path* (and missing parents) owned by *username*."""
        self._gate.require(ACTION_USER_FILES, "Not authorized to manage user files")
        account = self._users.get_managed_account(username)
        path = self._target_in_home(path, account)
        try:
            self._make_dirs(path, account, self._primary_gid(account))
        except OSError as e:
            raise OperationFailed(f"Failed to create {path}: {e.strerror or e}")
        return True

    def set_directory_acl(
        self, path: str, username: str, recursive: bool, caller_uid: int | None = None
    ) -> bool:
        """
        Give *username* read access to a directory the caller owns.

        Uses ``rX`` so only directories (and already executable files)
        become traversable.
        """
        self._gate.require(ACTION_USER_FILES, "Not authorized to manage user files")
        account = self._users.get_managed_account(username)
        if not path or not os.path.isabs(path) or has_traversal(path):
            raise InvalidArgs(f"Invalid path: {path}")
        if not self._fs.is_dir(path):
            raise InvalidArgs(f"{path} is not a directory")
        self._require_owned_by_caller(path, caller_uid)

        args = ["-m", f"u:{account.username}:rX", path]
        timeout = self._timeouts.quick
        if recursive:
            args.insert(0, "-R")
            timeout = self._timeouts.recursive
        result = self._runner.run("setfacl", args, timeout)
        if not result.ok:
            raise OperationFailed(f"Failed to set ACL on {path}: {result.error_output}")
        return True

    def set_path_acl_with_parents(
        self, path: str, username: str, caller_uid: int | None = None
    ) -> bool:
        """
        Like :meth:`set_directory_acl`, but also grants traverse on every
        parent that does not already allow it (external drives under
        ``/run/media/<user>`` are typically 0750).
        """
        self._gate.require(ACTION_USER_FILES, "Not authorized to manage user files")
        account = self._users.get_managed_account(username)
        if not path or not os.path.isabs(path) or has_traversal(path):
            raise InvalidArgs(f"Invalid path: {path}")
        path = os.path.normpath(path)
        self._require_owned_by_caller(path, caller_uid)

        parents = []
        current = os.path.dirname(path)
        while current != "/":
            parents.append(current)
            current = os.path.dirname(current)

        for parent in reversed(parents):
            try:
                mode = self._fs.stat(parent).mode
            except OSError as e:
                raise OperationFailed(f"Cannot inspect {parent}: {e.strerror or e}")
            if mode & stat.S_IXOTH:
                continue
            result = self._runner.run(
                "setfacl", ["-m", f"u:{account.username}:x", parent], self._timeouts.quick
            )
            if not result.ok:
                raise OperationFailed(f"Failed to set ACL on {parent}: {result.error_output}")

        result = self._runner.run(
            "setfacl", ["-m", f"u:{account.username}:rX", path], self._timeouts.quick
        )
        if not result.ok:
            raise OperationFailed(f"Failed to set ACL on {path}: {result.error_output}")
        return True

    def get_user_steam_id(self, username: str) -> str:
        """Return the first Steam account id found in the user's Steam data, or ''."""
        self._gate.require(ACTION_READ_USER_DATA, "Not authorized to read user data")
        account = self._users.get_managed_account(username)
        for relative in STEAM_USERDATA_DIRS:
            userdata = os.path.join(account.home_dir, relative)
            try:
                entries = self._fs.list_dir(userdata)
            except OSError:
                continue
            for entry in entries:
                # "0" is the anonymous placeholder Steam creates before login
                if entry.isdigit() and entry != "0" and self._fs.is_dir(os.path.join(userdata, entry)):
                    return entry
        return ""
