"""
Host system access.

Protocols for running external tools, querying the account database and
touching the filesystem, plus their production implementations.
"""

from couchbroker.domain.system.base import (
    Account,
    AccountDatabase,
    CommandResult,
    CommandRunner,
    FileInfo,
    FileSystem,
    Group,
)
from couchbroker.domain.system.local import LocalFileSystem, PasswdDatabase, SubprocessRunner

__all__ = [
    "Account",
    "AccountDatabase",
    "CommandResult",
    "CommandRunner",
    "FileInfo",
    "FileSystem",
    "Group",
    "LocalFileSystem",
    "PasswdDatabase",
    "SubprocessRunner",
]
