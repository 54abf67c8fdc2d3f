"""
Input device ownership for per-player isolation.

A device handed to a player is owned ``<uid>:<primary gid>`` with mode
0600, so only that player's session can read it. Released devices go back
to ``root:<device group>`` with mode 0660.
"""

from __future__ import annotations

import logging
import os
import stat

from couchbroker.config.models import DevicesConfig
from couchbroker.config.settings import (
    ACTION_DEVICE_OWNER,
    DEVICE_DEFAULT_MODE,
    DEVICE_OWNED_MODE,
)
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import InvalidArgs, OperationFailed
from couchbroker.domain.system.base import AccountDatabase, FileSystem
from couchbroker.domain.types import ManagedDevice
from couchbroker.domain.validators import has_traversal

logger = logging.getLogger("couchplay-broker")

DENIED_MESSAGE = "Not authorized to change device ownership"


class DeviceOwnershipManager:
    """Transfers and restores ownership of input device nodes."""

    def __init__(
        self,
        gate: AuthorizationGate,
        accounts: AccountDatabase,
        fs: FileSystem,
        config: DevicesConfig,
    ) -> None:
        self._gate = gate
        self._accounts = accounts
        self._fs = fs
        self._directory = os.path.normpath(config.directory)
        self._group = config.group
        # path -> ManagedDevice, in the order devices were handed out
        self._devices: dict[str, ManagedDevice] = {}

    @property
    def tracked(self) -> list[ManagedDevice]:
        return list(self._devices.values())

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_lexical(self, path: str) -> None:
        """Reject paths outside the device directory without touching the filesystem."""
        if not path or not path.startswith(self._directory + "/"):
            raise InvalidArgs(f"Invalid device path: {path}")
        if has_traversal(path):
            raise InvalidArgs(f"Invalid device path: {path}")

    def _check_device(self, path: str) -> None:
        self._check_lexical(path)
        try:
            info = self._fs.stat(path)
        except OSError:
            raise InvalidArgs(f"Invalid device path: {path}")
        if not stat.S_ISCHR(info.mode):
            raise InvalidArgs(f"Invalid device path: {path} is not a character device")

    def _default_gid(self) -> int:
        group = self._accounts.lookup_group(self._group)
        return group.gid if group else 0

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def change_owner(self, path: str, uid: int) -> bool:
        """
        Give *path* exclusively to account *uid*.

        Raises:
            AccessDenied: If the gate refuses
            InvalidArgs: If the path is not an input device or uid is unknown
            OperationFailed: If chown/chmod fails (nothing is recorded)
        """
        self._gate.require(ACTION_DEVICE_OWNER, DENIED_MESSAGE)
        self._check_device(path)
        return self._apply(path, uid)

    def _apply(self, path: str, uid: int) -> bool:
        account = self._accounts.lookup_account_by_uid(uid)
        if account is None:
            raise InvalidArgs(f"User with UID {uid} does not exist")

        try:
            self._fs.chown(path, uid, account.gid)
        except OSError as e:
            raise OperationFailed(f"Failed to change ownership of {path}: {e.strerror or e}")

        try:
            self._fs.chmod(path, DEVICE_OWNED_MODE)
        except OSError as e:
            # Ownership moved but the mode did not; put the node back so the
            # tracked set stays exact.
            self._restore_default(path, quiet=True)
            raise OperationFailed(f"Failed to change permissions of {path}: {e.strerror or e}")

        if path in self._devices:
            self._devices[path].owner_uid = uid
        else:
            self._devices[path] = ManagedDevice(path=path, owner_uid=uid)
        logger.info(f"Device {path} handed to uid {uid}")
        return True

    def change_owner_batch(self, paths: list[str], uid: int) -> int:
        """
        Hand several devices to *uid*.

        Every path is validated lexically before any is touched; one
        malformed path rejects the whole batch. Afterwards each device is
        applied independently and the number of successes is returned.
        """
        self._gate.require(ACTION_DEVICE_OWNER, DENIED_MESSAGE)
        invalid = []
        for path in paths:
            try:
                self._check_lexical(path)
            except InvalidArgs:
                invalid.append(path)
        if invalid:
            raise InvalidArgs(f"Invalid device path(s): {', '.join(invalid)}")

        success_count = 0
        for path in paths:
            try:
                self._check_device(path)
                self._apply(path, uid)
                success_count += 1
            except (InvalidArgs, OperationFailed) as e:
                logger.warning(f"Batch ownership change skipped {path}: {e.message}")
        return success_count

    def reset_owner(self, path: str) -> bool:
        """
        Return *path* to ``root:<device group>`` mode 0660.

        Raises:
            AccessDenied: If the gate refuses
            InvalidArgs: If the path is not an input device
            OperationFailed: If chown/chmod fails (the device stays tracked)
        """
        self._gate.require(ACTION_DEVICE_OWNER, DENIED_MESSAGE)
        self._check_device(path)
        try:
            self._restore_default(path)
        except OSError as e:
            raise OperationFailed(f"Failed to reset ownership of {path}: {e.strerror or e}")
        self._devices.pop(path, None)
        return True

    def reset_all(self) -> int:
        """Reset every tracked device; returns the number reset."""
        self._gate.require(ACTION_DEVICE_OWNER, DENIED_MESSAGE)
        return self.release_all()

    def _restore_default(self, path: str, quiet: bool = False) -> None:
        try:
            self._fs.chown(path, 0, self._default_gid())
            self._fs.chmod(path, DEVICE_DEFAULT_MODE)
        except OSError as e:
            if not quiet:
                raise
            logger.error(f"Could not restore default ownership of {path}: {e}")

    def release_all(self) -> int:
        """Reset every tracked device without authorization (shutdown path).

        Failures stay tracked. Devices that disappeared (unplugged) are
        forgotten without being counted.
        """
        success_count = 0
        for path in list(self._devices):
            try:
                self._restore_default(path)
            except FileNotFoundError:
                logger.info(f"Device {path} is gone, no longer tracking it")
                self._devices.pop(path, None)
                continue
            except OSError as e:
                logger.warning(f"Failed to reset ownership of {path}: {e}")
                continue
            self._devices.pop(path, None)
            success_count += 1
        return success_count
