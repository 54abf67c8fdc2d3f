"""
Base classes and protocols for host system access.

Every privileged action the broker takes goes through one of these
narrow interfaces so managers share identical timeout/error semantics
and tests can substitute in-memory doubles.
"""

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class CommandResult:
    """Outcome of one external tool invocation."""

    tool: str
    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def error_output(self) -> str:
        """Best human-readable description of a failure."""
        text = self.stderr.strip() or self.stdout.strip()
        if self.timed_out:
            return text or "timed out"
        return text or f"exit code {self.exit_code}"


@dataclass
class Account:
    """An entry of the account database."""

    username: str
    uid: int
    gid: int
    home_dir: str
    shell: str = "/bin/bash"


@dataclass
class Group:
    """An entry of the group database."""

    name: str
    gid: int
    members: list[str] = field(default_factory=list)


@dataclass
class FileInfo:
    """Subset of ``stat`` the broker inspects."""

    mode: int
    uid: int
    gid: int


class CommandRunner(Protocol):
    """Runs one short-lived external tool with a bounded wait."""

    def run(self, tool: str, args: list[str], timeout: float) -> CommandResult:
        """
        Run *tool* with *args*.

        Args:
            tool: Executable name or path
            args: Arguments (never passed through a shell)
            timeout: Seconds to wait before giving up

        Returns:
            CommandResult; a timeout or a missing tool is reported as a
            failed result, never raised
        """
        ...


class AccountDatabase(Protocol):
    """Pure query capability over the account and group databases."""

    def lookup_account(self, username: str) -> Account | None:
        """Return the account called *username*, or None."""
        ...

    def lookup_account_by_uid(self, uid: int) -> Account | None:
        """Return the account with numeric id *uid*, or None."""
        ...

    def lookup_group(self, name: str) -> Group | None:
        """Return the group called *name*, or None."""
        ...


class FileSystem(Protocol):
    """Filesystem syscalls used by the managers.

    Methods raise ``OSError`` subclasses exactly like the ``os`` module.
    """

    def stat(self, path: str) -> FileInfo:
        ...

    def exists(self, path: str) -> bool:
        ...

    def is_dir(self, path: str) -> bool:
        ...

    def is_file(self, path: str) -> bool:
        ...

    def chown(self, path: str, uid: int, gid: int, follow_symlinks: bool = True) -> None:
        ...

    def chmod(self, path: str, mode: int) -> None:
        ...

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        ...

    def list_dir(self, path: str) -> list[str]:
        ...

    def read_text(self, path: str) -> str:
        ...

    def write_bytes(self, path: str, content: bytes) -> None:
        """Create or truncate *path*; a symlink at *path* is refused."""
        ...

    def copy_file(self, source: str, target: str) -> None:
        """Copy contents only; a symlink at *target* is refused."""
        ...

    def real_path(self, path: str) -> str:
        ...
