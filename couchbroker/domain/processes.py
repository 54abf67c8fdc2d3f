"""
Supervision of detached game instance processes.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Callable

from couchbroker.config.settings import ACTION_LAUNCH
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import InvalidArgs, OperationFailed
from couchbroker.domain.system.base import FileSystem
from couchbroker.domain.types import LaunchedProcess

logger = logging.getLogger("couchplay-broker")


class ProcessSupervisor:
    """
    Starts detached children and terminates them on request.

    Each child leads its own session, so signals go to the whole process
    group. The process map is shared with the background monitor and
    guarded by a lock.
    """

    def __init__(
        self,
        gate: AuthorizationGate,
        fs: FileSystem,
        is_managed_uid: Callable[[int], bool],
        stop_grace: float = 5.0,
    ) -> None:
        self._gate = gate
        self._fs = fs
        self._is_managed_uid = is_managed_uid
        self._stop_grace = stop_grace
        self._processes: dict[int, LaunchedProcess] = {}
        self._lock = threading.Lock()

    @property
    def tracked(self) -> list[LaunchedProcess]:
        with self._lock:
            return list(self._processes.values())

    def launch(
        self,
        argv: list[str],
        username: str | None = None,
        env: dict[str, str] | None = None,
    ) -> int:
        """
        Start *argv* detached from the broker. Callers authorize first.

        Returns:
            The child's pid

        Raises:
            OperationFailed: If the executable cannot be started
        """
        if not argv:
            raise InvalidArgs("Command is required")
        self.reap()
        try:
            handle = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
                env=env,
            )
        except OSError as e:
            raise OperationFailed(f"Failed to start {argv[0]}: {e.strerror or e}")

        with self._lock:
            self._processes[handle.pid] = LaunchedProcess(pid=handle.pid, handle=handle, username=username)
        logger.info(f"Launched pid {handle.pid} for {username or 'compositor user'}: {argv[0]}")
        return handle.pid

    def reap(self) -> list[int]:
        """Forget children that have exited; returns their pids."""
        with self._lock:
            exited = [pid for pid, proc in self._processes.items() if proc.handle.poll() is not None]
            for pid in exited:
                proc = self._processes.pop(pid)
                logger.info(f"Instance pid {pid} exited with code {proc.handle.returncode}")
        return exited

    @staticmethod
    def _signal_group(pid: int, sig: int) -> None:
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass

    def _terminate(self, proc: LaunchedProcess, graceful: bool) -> None:
        if graceful:
            self._signal_group(proc.pid, signal.SIGTERM)
            try:
                proc.handle.wait(timeout=self._stop_grace)
                return
            except subprocess.TimeoutExpired:
                logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
        self._signal_group(proc.pid, signal.SIGKILL)
        try:
            proc.handle.wait(timeout=self._stop_grace)
        except subprocess.TimeoutExpired:
            logger.error(f"pid {proc.pid} did not exit after SIGKILL")

    def _signal_untracked(self, pid: int, sig: int) -> None:
        try:
            owner = self._fs.stat(f"/proc/{pid}").uid
        except OSError:
            raise InvalidArgs(f"No such process: {pid}")
        if not self._is_managed_uid(owner):
            raise InvalidArgs(f"Process {pid} does not belong to a managed user")
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            raise InvalidArgs(f"No such process: {pid}")
        except OSError as e:
            raise OperationFailed(f"Failed to signal {pid}: {e.strerror or e}")

    def _stop(self, pid: int, graceful: bool) -> bool:
        if pid <= 1:
            raise InvalidArgs(f"Invalid pid: {pid}")
        self.reap()
        with self._lock:
            proc = self._processes.pop(pid, None)
        if proc is None:
            # Not ours (broker restarted since launch)
            self._signal_untracked(pid, signal.SIGTERM if graceful else signal.SIGKILL)
            return True
        self._terminate(proc, graceful)
        return True

    def stop(self, pid: int) -> bool:
        """SIGTERM, wait up to the grace period, then SIGKILL."""
        self._gate.require(ACTION_LAUNCH, "Not authorized to stop instances")
        return self._stop(pid, graceful=True)

    def kill(self, pid: int) -> bool:
        self._gate.require(ACTION_LAUNCH, "Not authorized to kill instances")
        return self._stop(pid, graceful=False)

    def release_all(self) -> int:
        """Stop every tracked child (shutdown path); returns how many were stopped."""
        with self._lock:
            processes = list(self._processes.values())
            self._processes.clear()
        for proc in processes:
            if proc.handle.poll() is None:
                self._terminate(proc, graceful=True)
        return len(processes)
