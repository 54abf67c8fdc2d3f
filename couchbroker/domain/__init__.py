"""Domain module containing the privileged resource managers."""

from couchbroker.domain.errors import BrokerError, InvalidArgs, AccessDenied, OperationFailed
from couchbroker.domain.authorization import AuthorizationGate
from couchbroker.domain.devices import DeviceOwnershipManager
from couchbroker.domain.runtime_access import RuntimeAccessManager
from couchbroker.domain.mounts import MountManager
from couchbroker.domain.users import UserLifecycleManager
from couchbroker.domain.user_files import UserFilesManager
from couchbroker.domain.processes import ProcessSupervisor

__all__ = [
    "BrokerError",
    "InvalidArgs",
    "AccessDenied",
    "OperationFailed",
    "AuthorizationGate",
    "DeviceOwnershipManager",
    "RuntimeAccessManager",
    "MountManager",
    "UserLifecycleManager",
    "UserFilesManager",
    "ProcessSupervisor",
]
