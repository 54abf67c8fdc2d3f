"""
Background reaping of exited instances.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from couchbroker.observability import collect_process_metrics

if TYPE_CHECKING:
    from couchbroker.container import Broker

logger = logging.getLogger("couchplay-broker")


class ProcessMonitor:
    """Background service that reaps exited instances and refreshes their gauge."""

    def __init__(self, broker: Broker, interval: int = 5):
        """
        Initialize process monitor.

        Args:
            broker: Broker whose supervisor is polled
            interval: Check interval in seconds
        """
        self.broker = broker
        self.interval = interval
        self.running = False

    def start(self) -> None:
        """Start the monitor service."""
        self.running = True
        threading.Thread(target=self._monitor_loop, daemon=True).start()
        logger.info("Process monitor started")

    def stop(self) -> None:
        self.running = False

    def check(self) -> list[int]:
        """Run one monitoring pass; returns the pids reaped."""
        exited = self.broker.processes.reap()
        collect_process_metrics(self.broker)
        return exited

    def _monitor_loop(self) -> None:
        """Main monitor loop."""
        while self.running:
            try:
                self.check()
            except Exception as e:
                logger.error(f"Monitor error: {e}")
            time.sleep(self.interval)
