"""
gunicorn settings for the broker.

One sync worker with one thread: calls are served strictly one at a time,
and the in-memory tracked state lives in exactly one process.
"""

import os

from couchbroker.config.loader import BrokerConfig

_server = BrokerConfig.settings().server

wsgi_app = "couchbroker.app:app"
bind = f"unix:{_server.socket_path}"
umask = 0o777 & ~_server.socket_mode
workers = 1
threads = 1
worker_class = "sync"
# pkcheck may wait for an interactive authentication dialog
timeout = 180
graceful_timeout = 60
loglevel = os.environ.get("COUCHPLAY_LOG_LEVEL", "info").lower()
accesslog = None


def worker_exit(server, worker):
    """Release tracked resources before the worker goes away."""
    from couchbroker.container import get_broker

    try:
        get_broker().shutdown()
    except RuntimeError:
        # Worker never finished loading the app
        pass
