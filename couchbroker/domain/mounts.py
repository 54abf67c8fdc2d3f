"""
Bind mounts of shared directories into player homes.
"""

from __future__ import annotations

import logging
import os

from couchbroker.config.models import MountsConfig
from couchbroker.config.settings import ACTION_MOUNT
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import InvalidArgs
from couchbroker.domain.system.base import Account, AccountDatabase, CommandRunner, FileSystem
from couchbroker.domain.types import MountRecord
from couchbroker.domain.users import UserLifecycleManager
from couchbroker.domain.validators import is_within, validate_username

logger = logging.getLogger("couchplay-broker")


class MountManager:
    """Creates bind mounts and tracks them per target username."""

    def __init__(
        self,
        gate: AuthorizationGate,
        runner: CommandRunner,
        accounts: AccountDatabase,
        users: UserLifecycleManager,
        fs: FileSystem,
        config: MountsConfig,
        timeout: float = 5.0,
    ) -> None:
        self._gate = gate
        self._runner = runner
        self._accounts = accounts
        self._users = users
        self._fs = fs
        self._app_name = config.app_name
        self._timeout = timeout
        self._records: dict[str, list[MountRecord]] = {}

    @property
    def records(self) -> dict[str, list[MountRecord]]:
        return {username: list(records) for username, records in self._records.items()}

    def record_count(self) -> int:
        return sum(len(records) for records in self._records.values())

    # ------------------------------------------------------------------
    # Path computation
    # ------------------------------------------------------------------

    def resolve_spec(self, spec: str, target_home: str, compositor_home: str) -> tuple[str, str]:
        """
        Turn ``source[|alias]`` into ``(source, target)``.

        Relative sources are taken from the compositor home. The target is
        the alias under the target home when one is given, the same
        relative location when the source sits in the compositor home, and
        ``<home>/.<app>/mounts/<source>`` otherwise.

        Raises:
            InvalidArgs: If the spec is empty or the target leaves the home
        """
        source, _, alias = spec.partition("|")
        source = source.strip()
        alias = alias.strip()
        if not source:
            raise InvalidArgs(f"Invalid mount spec: {spec!r}")

        if not os.path.isabs(source):
            source = os.path.join(compositor_home, source)
        source = os.path.normpath(source)

        if alias:
            target = os.path.join(target_home, alias.lstrip("/"))
        elif is_within(source, compositor_home) and source != os.path.normpath(compositor_home):
            target = os.path.join(target_home, os.path.relpath(source, compositor_home))
        else:
            target = os.path.join(target_home, f".{self._app_name}", "mounts", source.lstrip("/"))
        target = os.path.normpath(target)

        if not is_within(target, target_home) or target == os.path.normpath(target_home):
            raise InvalidArgs(f"Mount target {target} is outside {target_home}")
        return source, target

    def _resolves_inside(self, target: str, home: str) -> bool:
        """True when no existing component of *target* below *home* is a symlink."""
        home = os.path.normpath(home)
        expected = os.path.join(self._fs.real_path(home), os.path.relpath(target, home))
        return self._fs.real_path(target) == os.path.normpath(expected)

    def _ensure_target(self, target: str, account: Account) -> None:
        """Create missing components below the home, owned by *account*."""
        home = os.path.normpath(account.home_dir)
        missing = []
        current = target
        while current != home and not self._fs.is_dir(current):
            missing.append(current)
            current = os.path.dirname(current)
        for path in reversed(missing):
            self._fs.mkdir(path, 0o755)
            self._fs.chown(path, account.uid, account.gid, follow_symlinks=False)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def mount(self, username: str, compositor_uid: int, specs: list[str]) -> int:
        """
        Bind-mount each spec into the home of *username*.

        Per-directory failures are logged and skipped. A target whose
        existing components pass through a symlink is skipped as well.

        Returns:
            Number of directories mounted (already tracked ones included)

        Raises:
            InvalidArgs: If either account does not exist
            AccessDenied: If *username* is not a managed account
        """
        self._gate.require(ACTION_MOUNT, "Not authorized to mount shared directories")
        self._users.get_managed_account(username)

        account = self._accounts.lookup_account(username)
        if account is None:
            raise InvalidArgs(f"User '{username}' does not exist")
        compositor = self._accounts.lookup_account_by_uid(compositor_uid)
        if compositor is None:
            raise InvalidArgs(f"Compositor user with UID {compositor_uid} does not exist")

        mounted = 0
        for spec in specs:
            try:
                source, target = self.resolve_spec(spec, account.home_dir, compositor.home_dir)
            except InvalidArgs as e:
                logger.warning(f"Skipping mount: {e.message}")
                continue

            if not self._fs.is_dir(source):
                logger.warning(f"Skipping mount: {source} is not a directory")
                continue

            record = MountRecord(source_path=source, target_path=target, username=username)
            if record in self._records.get(username, []):
                logger.debug(f"{source} already mounted at {target}")
                mounted += 1
                continue

            if not self._resolves_inside(target, account.home_dir):
                logger.warning(f"Skipping mount: {target} passes through a symlink")
                continue

            try:
                self._ensure_target(target, account)
            except OSError as e:
                logger.warning(f"Skipping mount: cannot create {target}: {e}")
                continue

            if not self._resolves_inside(target, account.home_dir):
                logger.warning(f"Skipping mount: {target} changed while it was created")
                continue

            result = self._runner.run("mount", ["--bind", source, target], self._timeout)
            if not result.ok:
                logger.warning(f"Failed to bind {source} at {target}: {result.error_output}")
                continue

            self._records.setdefault(username, []).append(record)
            mounted += 1
            logger.info(f"Mounted {source} at {target} for {username}")

        return mounted

    def _unmount_record(self, record: MountRecord) -> bool:
        result = self._runner.run("umount", [record.target_path], self._timeout)
        if result.ok:
            return True
        logger.warning(
            f"umount {record.target_path} failed ({result.error_output}), trying lazy unmount"
        )
        result = self._runner.run("umount", ["-l", record.target_path], self._timeout)
        if result.ok:
            return True
        logger.error(f"Lazy unmount of {record.target_path} failed: {result.error_output}")
        return False

    def _unmount_user(self, username: str) -> int:
        # Reverse order so nested mounts go first
        records = self._records.pop(username, [])
        return sum(1 for record in reversed(records) if self._unmount_record(record))

    def unmount(self, username: str) -> int:
        """Unmount everything tracked for *username*; returns the success count."""
        self._gate.require(ACTION_MOUNT, "Not authorized to unmount shared directories")
        validate_username(username)
        return self._unmount_user(username)

    def unmount_all(self) -> int:
        self._gate.require(ACTION_MOUNT, "Not authorized to unmount shared directories")
        return self.release_all()

    def release_all(self) -> int:
        """Unmount every tracked record without authorization (shutdown path)."""
        count = 0
        for username in reversed(list(self._records)):
            count += self._unmount_user(username)
        return count
