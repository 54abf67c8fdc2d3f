"""
The broker object: composes the managers and owns shutdown cleanup.

Stored in ``app.extensions['broker']`` during Flask context,
with a global fallback for background threads and the atexit hook
that run outside Flask request context.
"""

from __future__ import annotations

import logging
from typing import Callable

from couchbroker.config.models import BrokerSettings
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.devices import DeviceOwnershipManager
from couchbroker.domain.mounts import MountManager
from couchbroker.domain.processes import ProcessSupervisor
from couchbroker.domain.runtime_access import RuntimeAccessManager
from couchbroker.domain.system import (
    AccountDatabase,
    CommandRunner,
    FileSystem,
    LocalFileSystem,
    PasswdDatabase,
    SubprocessRunner,
)
from couchbroker.domain.types import CallerIdentity
from couchbroker.domain.user_files import UserFilesManager
from couchbroker.domain.users import UserLifecycleManager
from couchbroker.services.instances import InstanceLauncher
from couchbroker.services.process_monitor import ProcessMonitor

logger = logging.getLogger("couchplay-broker")


class Broker:
    """Composes every manager over one set of system seams."""

    def __init__(
        self,
        settings: BrokerSettings,
        runner: CommandRunner | None = None,
        accounts: AccountDatabase | None = None,
        fs: FileSystem | None = None,
        gate: AuthorizationGate | None = None,
        subject_provider: Callable[[], CallerIdentity | None] | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.accounts = accounts or PasswdDatabase()
        self.fs = fs or LocalFileSystem()
        timeouts = settings.timeouts

        if subject_provider is None:
            from couchbroker.api.auth import current_caller
            subject_provider = current_caller
        if gate is None:
            gate = AuthorizationGate(
                self.runner,
                self.fs,
                subject_provider,
                timeout=timeouts.authorization,
                allow_user_interaction=settings.security.allow_user_interaction,
            )
        self.gate = gate

        self.devices = DeviceOwnershipManager(gate, self.accounts, self.fs, settings.devices)
        self.runtime = RuntimeAccessManager(
            gate, self.runner, self.accounts, self.fs, settings.runtime_access, timeout=timeouts.quick
        )
        self.users = UserLifecycleManager(
            gate, self.runner, self.accounts, self.fs, settings.accounts, timeouts
        )
        self.mounts = MountManager(
            gate, self.runner, self.accounts, self.users, self.fs, settings.mounts, timeout=timeouts.quick
        )
        self.files = UserFilesManager(gate, self.runner, self.users, self.fs, timeouts)
        self.processes = ProcessSupervisor(
            gate, self.fs, self.users.is_managed_uid, stop_grace=settings.instances.stop_grace
        )
        self.instances = InstanceLauncher(
            gate,
            self.accounts,
            self.users,
            self.runtime,
            self.processes,
            settings.instances,
            settings.runtime_access,
            caller_provider=subject_provider,
        )
        self.monitor = ProcessMonitor(self, interval=settings.instances.monitor_interval)
        self._shut_down = False

    def tracked_counts(self) -> dict[str, int]:
        return {
            "devices": len(self.devices.tracked),
            "grants": len(self.runtime.grants),
            "mounts": self.mounts.record_count(),
            "processes": len(self.processes.tracked),
        }

    def shutdown(self) -> None:
        """
        Undo every piece of tracked privileged state, exactly once.

        Order: runtime grants, mounts, processes, devices. Each step is
        best-effort so a failure never blocks the steps after it.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self.monitor.stop()
        logger.info("Broker shutting down, releasing tracked resources")

        steps = [
            ("runtime grants", self.runtime.release_all),
            ("mounts", self.mounts.release_all),
            ("processes", self.processes.release_all),
            ("devices", self.devices.release_all),
        ]
        for name, release in steps:
            try:
                count = release()
                logger.info(f"Released {count} {name}")
            except Exception as e:
                logger.error(f"Releasing {name} failed: {e}")


# Fallback for background threads (set once at startup in app.py)
_global_broker: Broker | None = None


def get_broker() -> Broker:
    """Return the broker.

    Tries ``current_app.extensions['broker']`` first, then falls back
    to the module-level ``_global_broker`` (same instance, set at
    startup for use outside Flask context).
    """
    try:
        from flask import current_app

        return current_app.extensions["broker"]
    except (RuntimeError, KeyError):
        pass
    if _global_broker is not None:
        return _global_broker
    raise RuntimeError("Broker not initialized")
