"""
Typed data structures for the broker domain.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, asdict, field
from typing import Any


@dataclass
class ManagedDevice:
    """An input device whose ownership the broker has changed."""

    path: str
    owner_uid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RuntimeGrant:
    """Group ACL access to one compositor's runtime directory."""

    compositor_uid: int


@dataclass(frozen=True)
class MountRecord:
    """A bind mount created inside a user's home."""

    source_path: str
    target_path: str
    username: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ManagedAccount:
    """An OS account that belongs to the managed group."""

    username: str
    uid: int
    home_dir: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LaunchedProcess:
    """A detached child started by the supervisor."""

    pid: int
    handle: subprocess.Popen = field(repr=False)
    username: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "username": self.username}


@dataclass(frozen=True)
class CallerIdentity:
    """Credentials of the process on the other end of the RPC socket."""

    pid: int
    uid: int
    gid: int
