"""
Tests for couchbroker.domain.processes (ProcessSupervisor).
"""

import signal
import subprocess
from unittest.mock import MagicMock

import pytest

from couchbroker.config.settings import ACTION_LAUNCH
from couchbroker.domain.errors import AccessDenied, InvalidArgs, OperationFailed


def _handle(pid=5000, running=True):
    handle = MagicMock()
    handle.pid = pid
    handle.poll.return_value = None if running else 0
    handle.returncode = None if running else 0
    handle.wait.return_value = 0
    return handle


@pytest.fixture
def popen(mocker):
    return mocker.patch("couchbroker.domain.processes.subprocess.Popen", return_value=_handle())


@pytest.fixture
def killpg(mocker):
    return mocker.patch("couchbroker.domain.processes.os.killpg")


class TestLaunch:

    def test_launch_detached(self, broker, popen):
        """Popen in a new session, stdio to /dev/null, pid tracked."""
        pid = broker.processes.launch(["gamescope", "--", "steam"], username="alice")

        assert pid == 5000
        kwargs = popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] == subprocess.DEVNULL
        assert [p.to_dict() for p in broker.processes.tracked] == [{"pid": 5000, "username": "alice"}]

    def test_launch_failure(self, broker, mocker):
        mocker.patch(
            "couchbroker.domain.processes.subprocess.Popen",
            side_effect=FileNotFoundError(2, "No such file or directory"),
        )
        with pytest.raises(OperationFailed, match="gamescope"):
            broker.processes.launch(["gamescope"])
        assert broker.processes.tracked == []

    def test_empty_argv(self, broker):
        with pytest.raises(InvalidArgs):
            broker.processes.launch([])


class TestStopKill:

    def test_stop_graceful(self, broker, popen, killpg):
        broker.processes.launch(["gamescope"])
        assert broker.processes.stop(5000) is True
        killpg.assert_called_once_with(5000, signal.SIGTERM)
        assert broker.processes.tracked == []

    def test_stop_escalates(self, broker, popen, killpg):
        """Still alive after the grace period → SIGKILL."""
        popen.return_value.wait.side_effect = [subprocess.TimeoutExpired("gamescope", 0.5), 0]
        broker.processes.launch(["gamescope"])
        broker.processes.stop(5000)
        assert [c.args for c in killpg.call_args_list] == [
            (5000, signal.SIGTERM),
            (5000, signal.SIGKILL),
        ]

    def test_kill_forceful(self, broker, popen, killpg):
        broker.processes.launch(["gamescope"])
        assert broker.processes.kill(5000) is True
        killpg.assert_called_once_with(5000, signal.SIGKILL)

    def test_untracked_managed_process(self, broker, fs, mocker):
        """Broker restarted: pid owned by a managed user → os.kill."""
        fs.add_dir("/proc/7000", 0o555, 1001, 1001)
        kill = mocker.patch("couchbroker.domain.processes.os.kill")
        assert broker.processes.stop(7000) is True
        kill.assert_called_once_with(7000, signal.SIGTERM)

    def test_untracked_foreign_process(self, broker, fs, mocker):
        fs.add_dir("/proc/7001", 0o555, 1000, 1000)
        kill = mocker.patch("couchbroker.domain.processes.os.kill")
        with pytest.raises(InvalidArgs, match="managed user"):
            broker.processes.kill(7001)
        kill.assert_not_called()

    def test_untracked_missing_process(self, broker):
        with pytest.raises(InvalidArgs, match="No such process"):
            broker.processes.stop(7002)

    @pytest.mark.parametrize("pid", [0, 1, -5])
    def test_rejects_reserved_pids(self, broker, pid):
        with pytest.raises(InvalidArgs):
            broker.processes.kill(pid)

    def test_denied(self, broker, gate, popen, killpg):
        broker.processes.launch(["gamescope"])
        gate.denied.add(ACTION_LAUNCH)
        with pytest.raises(AccessDenied):
            broker.processes.stop(5000)
        killpg.assert_not_called()
        assert len(broker.processes.tracked) == 1


class TestReap:

    def test_reap_forgets_exited(self, broker, mocker):
        handles = [_handle(5000), _handle(5001)]
        mocker.patch("couchbroker.domain.processes.subprocess.Popen", side_effect=handles)
        broker.processes.launch(["a"])
        broker.processes.launch(["b"])

        handles[0].poll.return_value = 3
        handles[0].returncode = 3
        assert broker.processes.reap() == [5000]
        assert [p.pid for p in broker.processes.tracked] == [5001]

    def test_release_all_stops_running(self, broker, popen, killpg):
        broker.processes.launch(["gamescope"])
        assert broker.processes.release_all() == 1
        killpg.assert_called_once_with(5000, signal.SIGTERM)
        assert broker.processes.tracked == []
