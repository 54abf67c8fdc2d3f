"""
Tests for couchbroker.domain.runtime_access (shared-group socket ACLs).
"""

import pytest

from couchbroker.config.settings import ACTION_RUNTIME_ACCESS
from couchbroker.domain.errors import AccessDenied, InvalidArgs, OperationFailed


def _granted(runner):
    return [args for args in runner.calls_for("setfacl") if args[0] == "-m"]


def _revoked(runner):
    return [args for args in runner.calls_for("setfacl") if args[0] == "-x"]


class TestSetupAccess:

    def test_grants_every_socket(self, broker, runner):
        """Runtime dir, display, audio dir (with mask), audio sockets, xauth."""
        assert broker.runtime.setup_access(1000) is True

        assert _granted(runner) == [
            ["-m", "g:couchplay:x", "/run/user/1000"],
            ["-m", "g:couchplay:rw", "/run/user/1000/wayland-0"],
            ["-m", "g:couchplay:x,m::x", "/run/user/1000/pulse"],
            ["-m", "g:couchplay:rw", "/run/user/1000/pipewire-0"],
            ["-m", "g:couchplay:rw", "/run/user/1000/pulse/native"],
            ["-m", "g:couchplay:r", "/run/user/1000/xauth_AbCdEf"],
        ]
        assert [g.compositor_uid for g in broker.runtime.grants] == [1000]

    def test_second_call_is_noop(self, broker, runner):
        """Twice in a row → both True, ACLs applied once."""
        assert broker.runtime.setup_access(1000) is True
        first = len(runner.calls)
        assert broker.runtime.setup_access(1000) is True
        assert len(runner.calls) == first
        assert len(broker.runtime.grants) == 1

    def test_missing_optional_sockets_skipped(self, broker, runner, fs):
        fs.remove("/run/user/1000/pipewire-0")
        fs.remove("/run/user/1000/pulse/native")
        fs.remove("/run/user/1000/pulse")
        fs.remove("/run/user/1000/xauth_AbCdEf")

        assert broker.runtime.setup_access(1000) is True
        assert [args[2] for args in _granted(runner)] == [
            "/run/user/1000",
            "/run/user/1000/wayland-0",
        ]

    def test_unknown_compositor(self, broker):
        with pytest.raises(InvalidArgs):
            broker.runtime.setup_access(4000)

    def test_missing_runtime_dir(self, broker, fs, runner):
        for path in [p for p in fs.nodes if p.startswith("/run/user/1000")]:
            fs.remove(path)
        with pytest.raises(OperationFailed, match="Runtime directory"):
            broker.runtime.setup_access(1000)
        assert runner.calls == []

    def test_missing_display_socket(self, broker, fs, runner):
        fs.remove("/run/user/1000/wayland-0")
        with pytest.raises(OperationFailed, match="Display socket"):
            broker.runtime.setup_access(1000)
        assert runner.calls == []
        assert broker.runtime.grants == []

    def test_required_failure_rolls_back(self, broker, runner):
        """Display socket ACL fails → runtime dir entry removed, no grant."""
        runner.fail(
            "setfacl",
            when=lambda args: args[0] == "-m" and args[-1].endswith("wayland-0"),
            stderr="Operation not supported",
        )
        with pytest.raises(OperationFailed, match="Operation not supported"):
            broker.runtime.setup_access(1000)

        assert _revoked(runner) == [["-x", "g:couchplay", "/run/user/1000"]]
        assert broker.runtime.grants == []

    def test_optional_failure_still_grants(self, broker, runner):
        runner.fail("setfacl", when=lambda args: args[0] == "-m" and "pipewire" in args[-1])
        assert broker.runtime.setup_access(1000) is True
        assert len(broker.runtime.grants) == 1

    def test_denied(self, broker, gate, runner):
        gate.denied.add(ACTION_RUNTIME_ACCESS)
        with pytest.raises(AccessDenied):
            broker.runtime.setup_access(1000)
        assert runner.calls == []


class TestRemoveAccess:

    def test_removes_in_reverse_order(self, broker, runner):
        broker.runtime.setup_access(1000)
        assert broker.runtime.remove_access(1000) is True

        removed = [args[2] for args in _revoked(runner)]
        assert removed == [
            "/run/user/1000/xauth_AbCdEf",
            "/run/user/1000/pulse/native",
            "/run/user/1000/pipewire-0",
            "/run/user/1000/pulse",
            "/run/user/1000/wayland-0",
            "/run/user/1000",
        ]
        assert broker.runtime.grants == []

    def test_vanished_paths_are_not_errors(self, broker, fs):
        broker.runtime.setup_access(1000)
        fs.remove("/run/user/1000/wayland-0")
        fs.remove("/run/user/1000/pipewire-0")
        assert broker.runtime.remove_access(1000) is True

    def test_required_cleanup_failure_reports_false(self, broker, runner):
        """Grant is forgotten even when the display entry cannot be removed."""
        broker.runtime.setup_access(1000)
        runner.fail("setfacl", when=lambda args: args[0] == "-x" and args[-1].endswith("wayland-0"))
        assert broker.runtime.remove_access(1000) is False
        assert broker.runtime.grants == []

    def test_optional_cleanup_failure_ignored(self, broker, runner):
        broker.runtime.setup_access(1000)
        runner.fail("setfacl", when=lambda args: args[0] == "-x" and "xauth" in args[-1])
        assert broker.runtime.remove_access(1000) is True

    def test_release_all_revokes_every_grant(self, broker, runner):
        broker.runtime.setup_access(1000)
        assert broker.runtime.release_all() == 1
        assert broker.runtime.grants == []
        assert len(_revoked(runner)) == 6
