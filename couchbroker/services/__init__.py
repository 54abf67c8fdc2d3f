"""Services module for instance launching and background monitoring."""

from couchbroker.services.instances import InstanceLauncher
from couchbroker.services.process_monitor import ProcessMonitor

__all__ = [
    "InstanceLauncher",
    "ProcessMonitor",
]
