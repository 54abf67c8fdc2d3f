"""
Game instance launching.

An instance is a nested compositor running one player's game. For a
secondary player it runs as that player's account, inside the player's
own login session, while drawing on the compositor user's display and
playing through the compositor user's audio server.
"""

from __future__ import annotations

import logging
import os
import shlex
from typing import Callable

from couchbroker.config.models import InstancesConfig, RuntimeAccessConfig
from couchbroker.config.settings import ACTION_LAUNCH
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.errors import InvalidArgs
from couchbroker.domain.processes import ProcessSupervisor
from couchbroker.domain.runtime_access import RuntimeAccessManager
from couchbroker.domain.system.base import AccountDatabase
from couchbroker.domain.types import CallerIdentity
from couchbroker.domain.users import UserLifecycleManager
from couchbroker.domain.validators import validate_env_entries, validate_username

logger = logging.getLogger("couchplay-broker")

# Search path for instances started directly, without a login session
SESSION_PATH = "/usr/local/bin:/usr/bin:/bin"


class InstanceLauncher:
    """Builds and starts compositor command lines for players."""

    def __init__(
        self,
        gate: AuthorizationGate,
        accounts: AccountDatabase,
        users: UserLifecycleManager,
        runtime: RuntimeAccessManager,
        processes: ProcessSupervisor,
        config: InstancesConfig,
        runtime_config: RuntimeAccessConfig,
        caller_provider: Callable[[], CallerIdentity | None] = lambda: None,
    ) -> None:
        self._gate = gate
        self._accounts = accounts
        self._users = users
        self._runtime = runtime
        self._processes = processes
        self._config = config
        self._runtime_config = runtime_config
        self._caller_provider = caller_provider

    def session_environment(self, uid: int, compositor_uid: int) -> list[str]:
        """Variables pointing a player session at the compositor's sockets."""
        compositor_dir = self._runtime.runtime_dir(compositor_uid)
        return [
            f"XDG_RUNTIME_DIR={self._runtime.runtime_dir(uid)}",
            f"WAYLAND_DISPLAY={os.path.join(compositor_dir, self._runtime_config.display_socket)}",
            f"PIPEWIRE_REMOTE={os.path.join(compositor_dir, 'pipewire-0')}",
            f"PULSE_SERVER=unix:{os.path.join(compositor_dir, 'pulse', 'native')}",
        ]

    def build_shell_command(self, args: list[str], command: str) -> str:
        """
        ``exec <compositor> <args> -- <command>`` for ``bash -lc``.

        Compositor arguments are quoted one by one; *command* is a shell
        command line of the player's own and is passed through as written.
        """
        quoted = " ".join(shlex.quote(arg) for arg in args)
        parts = ["exec", shlex.quote(self._config.compositor_binary)]
        if quoted:
            parts.append(quoted)
        parts.extend(["--", command])
        return " ".join(parts)

    def build_argv(
        self,
        username: str,
        uid: int,
        compositor_uid: int,
        args: list[str],
        command: str,
        env: list[str],
    ) -> list[str]:
        """Command line that starts the instance inside the player's session."""
        environment = self.session_environment(uid, compositor_uid) + list(env)
        argv = ["machinectl", "shell", "-q"]
        argv.extend(f"--setenv={entry}" for entry in environment)
        argv.extend([
            f"{username}@.host",
            self._config.session_shell,
            "-lc",
            self.build_shell_command(args, command),
        ])
        return argv

    def launch_instance(
        self,
        username: str,
        compositor_uid: int,
        args: list[str],
        command: str,
        env: list[str],
    ) -> int:
        """
        Start an instance for *username* on the display of *compositor_uid*.

        The player must be a managed account or the caller's own. Only a
        caller launching as its own account, which is also the broker's
        effective uid, gets a direct child; its environment is built from
        the session variables and *env* alone.

        Returns:
            pid of the launched process

        Raises:
            AccessDenied: If the gate refuses or the player is not managed
            InvalidArgs: If an account is missing or the input is malformed
            OperationFailed: If runtime access or the launch itself fails
        """
        self._gate.require(ACTION_LAUNCH, "Not authorized to launch instances")
        validate_username(username)
        validate_env_entries(env)
        if not command or not command.strip() or "\x00" in command:
            raise InvalidArgs("Command is required")
        if any("\x00" in arg for arg in args):
            raise InvalidArgs("Invalid compositor argument")

        account = self._accounts.lookup_account(username)
        if account is None:
            raise InvalidArgs(f"User '{username}' does not exist")
        if self._accounts.lookup_account_by_uid(compositor_uid) is None:
            raise InvalidArgs(f"Compositor user with UID {compositor_uid} does not exist")

        caller = self._caller_provider()
        own_account = caller is not None and caller.uid == account.uid
        if not own_account:
            # Raises AccessDenied for accounts outside the managed group
            self._users.get_managed_account(username)
        if account.uid != compositor_uid:
            self._runtime.ensure_access(compositor_uid)

        if own_account and account.uid == os.geteuid():
            argv = [self._config.compositor_binary, *args, "--", self._config.session_shell, "-lc", command]
            child_env = {
                "PATH": SESSION_PATH,
                "HOME": account.home_dir,
                "USER": username,
                "LOGNAME": username,
            }
            child_env.update(
                entry.split("=", 1) for entry in self.session_environment(account.uid, compositor_uid) + list(env)
            )
            return self._processes.launch(argv, username=username, env=child_env)

        argv = self.build_argv(username, account.uid, compositor_uid, args, command, env)
        logger.info(f"Launching instance for {username} on display of uid {compositor_uid}")
        return self._processes.launch(argv, username=username)
