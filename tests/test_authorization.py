"""
Tests for couchbroker.domain.authorization (polkit-backed gate).
"""

import pytest

from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import AccessDenied
from couchbroker.domain.types import CallerIdentity

ACTION = "io.github.hikaps.couchplay.change-device-owner"

# comm contains a space and a parenthesis; start time is field 22
PROC_STAT = (
    "4242 (couch play) S 1 4242 4242 0 -1 4194560 1234 0 0 0 10 5 0 0 "
    "20 0 4 0 987654 123456789 4096 18446744073709551615"
)


@pytest.fixture
def proc_fs(fs):
    fs.add_file("/proc/4242/stat", PROC_STAT)
    return fs


def _gate(runner, fs, subject, **kwargs):
    return AuthorizationGate(runner, fs, lambda: subject, **kwargs)


class TestAuthorize:

    def test_granted(self, runner, proc_fs, caller):
        """pkcheck exit 0 → True, subject pinned by start time."""
        gate = _gate(runner, proc_fs, caller)
        assert gate.authorize(ACTION) is True
        assert runner.calls == [(
            "pkcheck",
            ["--action-id", ACTION, "--process", "4242,987654,1000", "--allow-user-interaction"],
        )]

    def test_without_interaction(self, runner, proc_fs, caller):
        gate = _gate(runner, proc_fs, caller, allow_user_interaction=False)
        gate.authorize(ACTION)
        assert "--allow-user-interaction" not in runner.calls[0][1]

    @pytest.mark.parametrize("exit_code", [1, 2, 3, 127])
    def test_pkcheck_refusal(self, runner, proc_fs, caller, exit_code):
        runner.fail("pkcheck", exit_code=exit_code)
        assert _gate(runner, proc_fs, caller).authorize(ACTION) is False

    def test_timeout_denies(self, runner, proc_fs, caller):
        from couchbroker.domain.system.base import CommandResult

        runner.on("pkcheck", result=CommandResult("pkcheck", [], -1, timed_out=True))
        assert _gate(runner, proc_fs, caller).authorize(ACTION) is False

    def test_unknown_caller_denies(self, runner, proc_fs):
        assert _gate(runner, proc_fs, None).authorize(ACTION) is False
        assert runner.calls == []

    def test_vanished_process_denies(self, runner, fs):
        caller = CallerIdentity(pid=9999, uid=1000, gid=1000)
        assert _gate(runner, fs, caller).authorize(ACTION) is False
        assert runner.calls == []

    def test_require_raises(self, runner, proc_fs, caller):
        runner.fail("pkcheck")
        with pytest.raises(AccessDenied, match="Not allowed"):
            _gate(runner, proc_fs, caller).require(ACTION, "Not allowed")

    def test_timeout_passed_to_runner(self, runner, proc_fs, caller):
        _gate(runner, proc_fs, caller, timeout=12.0).authorize(ACTION)
        assert runner.timeouts == [12.0]
