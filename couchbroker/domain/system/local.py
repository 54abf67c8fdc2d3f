"""
Production implementations of the host system protocols.
"""

import grp
import logging
import os
import pwd
import shutil
import subprocess
import time

from couchbroker.domain.system.base import Account, CommandResult, FileInfo, Group
from couchbroker.observability import EXTERNAL_COMMAND_DURATION, EXTERNAL_COMMANDS

logger = logging.getLogger("couchplay-broker")


class SubprocessRunner:
    """Runs external tools with ``subprocess.run``."""

    def __init__(self, env: dict[str, str] | None = None) -> None:
        # Privileged tools get a fixed, minimal environment
        self._env = env or {
            "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            "LC_ALL": "C",
        }

    def run(self, tool: str, args: list[str], timeout: float) -> CommandResult:
        start = time.monotonic()
        try:
            completed = subprocess.run(
                [tool, *args],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env,
                check=False,
            )
            result = CommandResult(
                tool=tool,
                args=list(args),
                exit_code=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"{tool} timed out after {timeout:.0f}s")
            result = CommandResult(
                tool=tool,
                args=list(args),
                exit_code=-1,
                stderr=f"{tool} timed out after {timeout:.0f}s",
                timed_out=True,
            )
        except OSError as e:
            logger.error(f"Could not execute {tool}: {e}")
            result = CommandResult(tool=tool, args=list(args), exit_code=127, stderr=str(e))

        EXTERNAL_COMMAND_DURATION.labels(tool=tool).observe(time.monotonic() - start)
        outcome = "ok" if result.ok else ("timeout" if result.timed_out else "failed")
        EXTERNAL_COMMANDS.labels(tool=tool, outcome=outcome).inc()
        return result


class PasswdDatabase:
    """Account/group lookups backed by NSS (``pwd`` and ``grp``)."""

    @staticmethod
    def _account(entry: pwd.struct_passwd) -> Account:
        return Account(
            username=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            home_dir=entry.pw_dir,
            shell=entry.pw_shell,
        )

    def lookup_account(self, username: str) -> Account | None:
        try:
            return self._account(pwd.getpwnam(username))
        except KeyError:
            return None

    def lookup_account_by_uid(self, uid: int) -> Account | None:
        try:
            return self._account(pwd.getpwuid(uid))
        except (KeyError, OverflowError):
            return None

    def lookup_group(self, name: str) -> Group | None:
        try:
            entry = grp.getgrnam(name)
        except KeyError:
            return None
        return Group(name=entry.gr_name, gid=entry.gr_gid, members=list(entry.gr_mem))


class LocalFileSystem:
    """Thin wrapper over ``os``/``shutil``."""

    def stat(self, path: str) -> FileInfo:
        st = os.stat(path)
        return FileInfo(mode=st.st_mode, uid=st.st_uid, gid=st.st_gid)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)

    def chown(self, path: str, uid: int, gid: int, follow_symlinks: bool = True) -> None:
        os.chown(path, uid, gid, follow_symlinks=follow_symlinks)

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        os.mkdir(path, mode)

    def list_dir(self, path: str) -> list[str]:
        return sorted(os.listdir(path))

    def read_text(self, path: str) -> str:
        with open(path, "r") as f:
            return f.read()

    def write_bytes(self, path: str, content: bytes) -> None:
        # Never follow a symlink planted at the destination
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW
        fd = os.open(path, flags, 0o644)
        with os.fdopen(fd, "wb") as f:
            f.write(content)

    def copy_file(self, source: str, target: str) -> None:
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW
        with open(source, "rb") as src:
            fd = os.open(target, flags, 0o644)
            with os.fdopen(fd, "wb") as dst:
                shutil.copyfileobj(src, dst)

    def real_path(self, path: str) -> str:
        return os.path.realpath(path)
