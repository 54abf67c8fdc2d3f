"""
Shared pytest fixtures for the broker test suite.

The managers only touch the host through three seams (command runner,
account database, filesystem). The fakes below implement those seams in
memory so every privileged operation can be exercised without root.
"""

import errno
import os
import posixpath
import stat
from dataclasses import dataclass, field

import pytest

# ---------------------------------------------------------------------------
# Environment stubs – must be set BEFORE any broker module is imported so
# that the config loader never reads /etc.
# ---------------------------------------------------------------------------

os.environ.setdefault("COUCHPLAY_CONFIG_PATH", "/tmp/couchplay-broker-tests/config")
os.environ.setdefault("COUCHPLAY_LOG_LEVEL", "WARNING")

from couchbroker.config.models import BrokerSettings  # noqa: E402
from couchbroker.domain.errors import AccessDenied  # noqa: E402
from couchbroker.domain.system.base import Account, CommandResult, FileInfo, Group  # noqa: E402
from couchbroker.domain.types import CallerIdentity  # noqa: E402


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class FakeRunner:
    """Scripted CommandRunner: every call succeeds unless a rule says otherwise."""

    def __init__(self):
        self.calls: list[tuple[str, list[str]]] = []
        self.timeouts: list[float] = []
        self._rules = []

    def on(self, tool, result=None, when=None, exit_code=0, stdout="", stderr=""):
        """Register the result for *tool* (optionally only when ``when(args)``)."""
        self._rules.append((tool, when, result, exit_code, stdout, stderr))

    def fail(self, tool, when=None, exit_code=1, stderr="boom"):
        self.on(tool, when=when, exit_code=exit_code, stderr=stderr)

    def run(self, tool, args, timeout):
        self.calls.append((tool, list(args)))
        self.timeouts.append(timeout)
        for rule_tool, when, result, exit_code, stdout, stderr in self._rules:
            if rule_tool != tool or (when is not None and not when(args)):
                continue
            if callable(result):
                return result(tool, args)
            if result is not None:
                return result
            return CommandResult(tool, list(args), exit_code, stdout=stdout, stderr=stderr)
        return CommandResult(tool, list(args), 0)

    def calls_for(self, tool):
        return [args for called, args in self.calls if called == tool]


# ---------------------------------------------------------------------------
# Account database
# ---------------------------------------------------------------------------

class FakeAccounts:
    """In-memory passwd/group tables."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.groups: dict[str, Group] = {}

    def add_account(self, username, uid, gid=None, home=None):
        account = Account(username, uid, uid if gid is None else gid, home or f"/home/{username}")
        self.accounts[username] = account
        return account

    def add_group(self, name, gid, members=None):
        group = Group(name, gid, list(members or []))
        self.groups[name] = group
        return group

    def lookup_account(self, username):
        return self.accounts.get(username)

    def lookup_account_by_uid(self, uid):
        return next((a for a in self.accounts.values() if a.uid == uid), None)

    def lookup_group(self, name):
        return self.groups.get(name)


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------

@dataclass
class Node:
    mode: int
    uid: int = 0
    gid: int = 0
    content: bytes = b""
    history: list = field(default_factory=list)


class FakeFileSystem:
    """In-memory FileSystem with injectable failures."""

    def __init__(self):
        self.nodes: dict[str, Node] = {"/": Node(stat.S_IFDIR | 0o755)}
        self.links: dict[str, str] = {}
        self.failures: dict[tuple[str, str], OSError] = {}

    # -- setup helpers -----------------------------------------------------

    def _add(self, path, mode, uid=0, gid=0, content=b""):
        path = posixpath.normpath(path)
        parent = posixpath.dirname(path)
        if parent not in self.nodes:
            self.add_dir(parent)
        self.nodes[path] = Node(mode, uid, gid, content)
        return self.nodes[path]

    def add_dir(self, path, mode=0o755, uid=0, gid=0):
        return self._add(path, stat.S_IFDIR | mode, uid, gid)

    def add_file(self, path, content=b"", mode=0o644, uid=0, gid=0):
        if isinstance(content, str):
            content = content.encode()
        return self._add(path, stat.S_IFREG | mode, uid, gid, content)

    def add_char_device(self, path, mode=0o660, uid=0, gid=0):
        return self._add(path, stat.S_IFCHR | mode, uid, gid)

    def add_socket(self, path, mode=0o755, uid=0, gid=0):
        return self._add(path, stat.S_IFSOCK | mode, uid, gid)

    def add_link(self, path, target):
        self.links[posixpath.normpath(path)] = posixpath.normpath(target)

    def fail_on(self, operation, path, error=None):
        self.failures[(operation, path)] = error or PermissionError(1, "Operation not permitted", path)

    def remove(self, path):
        self.nodes.pop(path, None)

    def _check(self, operation, path):
        error = self.failures.get((operation, path))
        if error is not None:
            raise error

    def _refuse_link(self, path):
        # Mirrors O_NOFOLLOW on the final component
        if posixpath.normpath(path) in self.links:
            raise OSError(errno.ELOOP, "Too many levels of symbolic links", path)

    def _node(self, path):
        path = self.real_path(path)
        node = self.nodes.get(path)
        if node is None:
            raise FileNotFoundError(2, "No such file or directory", path)
        return node

    # -- FileSystem protocol -------------------------------------------------

    def stat(self, path):
        self._check("stat", path)
        node = self._node(path)
        return FileInfo(mode=node.mode, uid=node.uid, gid=node.gid)

    def exists(self, path):
        return self.real_path(path) in self.nodes

    def is_dir(self, path):
        node = self.nodes.get(self.real_path(path))
        return node is not None and stat.S_ISDIR(node.mode)

    def is_file(self, path):
        node = self.nodes.get(self.real_path(path))
        return node is not None and stat.S_ISREG(node.mode)

    def chown(self, path, uid, gid, follow_symlinks=True):
        self._check("chown", path)
        if not follow_symlinks and posixpath.normpath(path) in self.links:
            return
        node = self._node(path)
        node.uid, node.gid = uid, gid
        node.history.append(("chown", uid, gid))

    def chmod(self, path, mode):
        self._check("chmod", path)
        node = self._node(path)
        node.mode = stat.S_IFMT(node.mode) | mode
        node.history.append(("chmod", mode))

    def mkdir(self, path, mode=0o755):
        self._check("mkdir", path)
        path = self.real_path(path)
        if path in self.nodes:
            raise FileExistsError(17, "File exists", path)
        if not self.is_dir(posixpath.dirname(path)):
            raise FileNotFoundError(2, "No such file or directory", path)
        self.nodes[path] = Node(stat.S_IFDIR | mode)

    def list_dir(self, path):
        self._check("list_dir", path)
        path = self.real_path(path)
        if not self.is_dir(path):
            raise FileNotFoundError(2, "No such file or directory", path)
        return sorted(
            posixpath.basename(p) for p in self.nodes
            if p != "/" and posixpath.dirname(p) == path
        )

    def read_text(self, path):
        self._check("read_text", path)
        return self._node(path).content.decode()

    def write_bytes(self, path, content):
        self._check("write_bytes", path)
        self._refuse_link(path)
        path = self.real_path(path)
        if not self.is_dir(posixpath.dirname(path)):
            raise FileNotFoundError(2, "No such file or directory", path)
        self.nodes[path] = Node(stat.S_IFREG | 0o644, content=content)

    def copy_file(self, source, target):
        self._check("copy_file", target)
        self._refuse_link(target)
        content = self._node(source).content
        self.write_bytes(target, content)

    def real_path(self, path):
        path = posixpath.normpath(path)
        for link in sorted(self.links, key=len, reverse=True):
            if path == link or path.startswith(link + "/"):
                return self.links[link] + path[len(link):]
        return path


# ---------------------------------------------------------------------------
# Authorization gate
# ---------------------------------------------------------------------------

class FakeGate:
    """Grants everything except the actions listed in ``denied``."""

    def __init__(self):
        self.denied: set[str] = set()
        self.deny_all = False
        self.checked: list[str] = []

    def authorize(self, action_id):
        self.checked.append(action_id)
        return not self.deny_all and action_id not in self.denied

    def require(self, action_id, message):
        if not self.authorize(action_id):
            raise AccessDenied(message)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

INPUT_GID = 104
MANAGED_GID = 980


@pytest.fixture
def settings():
    return BrokerSettings(
        accounts={"termination_grace": 0},
        instances={"stop_grace": 0.5},
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def accounts():
    """root, bob (compositor, uid 1000) and alice (managed player, uid 1001)."""
    db = FakeAccounts()
    db.add_account("root", 0, 0, "/root")
    db.add_account("bob", 1000, 1000, "/home/bob")
    db.add_account("alice", 1001, 1001, "/home/alice")
    db.add_group("input", INPUT_GID)
    db.add_group("couchplay", MANAGED_GID, members=["alice"])
    return db


@pytest.fixture
def fs():
    """A machine with one gamepad, two homes and a running compositor session."""
    f = FakeFileSystem()
    f.add_dir("/dev/input")
    f.add_char_device("/dev/input/event5", 0o660, 0, INPUT_GID)
    f.add_char_device("/dev/input/event6", 0o660, 0, INPUT_GID)
    f.add_file("/dev/input/by-id.txt")
    f.add_dir("/home/bob", 0o700, 1000, 1000)
    f.add_dir("/home/bob/Games", 0o755, 1000, 1000)
    f.add_dir("/home/alice", 0o700, 1001, 1001)
    f.add_dir("/run/user/1000", 0o700, 1000, 1000)
    f.add_socket("/run/user/1000/wayland-0", uid=1000, gid=1000)
    f.add_socket("/run/user/1000/pipewire-0", uid=1000, gid=1000)
    f.add_dir("/run/user/1000/pulse", 0o700, 1000, 1000)
    f.add_socket("/run/user/1000/pulse/native", uid=1000, gid=1000)
    f.add_file("/run/user/1000/xauth_AbCdEf", "cookie", 0o600, 1000, 1000)
    f.add_dir("/var/lib/systemd/linger")
    return f


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def broker(settings, runner, accounts, fs, gate):
    from couchbroker.container import Broker

    return Broker(settings, runner=runner, accounts=accounts, fs=fs, gate=gate)


@pytest.fixture
def caller():
    return CallerIdentity(pid=4242, uid=1000, gid=1000)


# ---------------------------------------------------------------------------
# Flask test client
# ---------------------------------------------------------------------------

@pytest.fixture
def app_client(mocker, broker, caller):
    """Flask test_client bound to the fake-backed broker, called as uid 1000."""
    mocker.patch("couchbroker.services.process_monitor.ProcessMonitor.start")
    mocker.patch("couchbroker.api.auth.peer_credentials", return_value=caller)

    from couchbroker.app import app
    from couchbroker.api.rate_limit import limiter

    app.config["TESTING"] = True
    app.extensions["broker"] = broker
    mocker.patch("couchbroker.container._global_broker", broker)
    limiter.reset()

    return app.test_client()
