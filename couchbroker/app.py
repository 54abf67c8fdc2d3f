"""
CouchPlay privileged broker.

Serves the broker API over a Unix socket (see gunicorn.conf.py) with a
single sync worker, so calls are handled one at a time:
- Identifies each caller from the socket's peer credentials
- Delegates every privileged operation to polkit for a decision
- Tracks all privileged state it creates and reverts it at exit
"""

import atexit
import logging
import os
import re

from flask import Flask, request

# =============================================================================
# Logging Setup
# =============================================================================

from couchbroker.observability import setup_json_logging

_log_level = os.environ.get("COUCHPLAY_LOG_LEVEL", "INFO").upper()
setup_json_logging(level=_log_level)
logger = logging.getLogger("couchplay-broker")


# Filter sensitive data from logs
class SensitiveDataFilter(logging.Filter):
    """Filter to mask sensitive data in log messages (launch environments included)."""

    SENSITIVE_PATTERNS = [
        (re.compile(r'password["\']?\s*[:=]\s*["\']?[^"\'}\s]+', re.I), 'password=***'),
        (re.compile(r'token["\']?\s*[:=]\s*["\']?[^"\'}\s]+', re.I), 'token=***'),
        (re.compile(r'secret["\']?\s*[:=]\s*["\']?[^"\'}\s]+', re.I), 'secret=***'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            for pattern, replacement in self.SENSITIVE_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


logger.addFilter(SensitiveDataFilter())

# =============================================================================
# Flask Application
# =============================================================================

app = Flask(__name__)

# Initialize rate limiter
from couchbroker.api.rate_limit import init_limiter
init_limiter(app)

# Initialize Prometheus metrics (auto-instruments all routes, exposes /metrics)
from couchbroker.observability import init_metrics
init_metrics(app)

# =============================================================================
# Broker and Routes
# =============================================================================

from couchbroker.config.loader import BrokerConfig
from couchbroker.container import Broker
import couchbroker.container as container_mod

settings = BrokerConfig.settings()
logging.getLogger().setLevel(settings.logging.level.upper())

broker = Broker(settings)
app.extensions["broker"] = broker
container_mod._global_broker = broker

from couchbroker.api.routes import api
from couchbroker.api.responses import api_error, error_response
from couchbroker.domain.errors import BrokerError
from couchbroker.observability import ERRORS_TOTAL

app.register_blueprint(api)

# =============================================================================
# Error Handlers
# =============================================================================

@app.errorhandler(BrokerError)
def handle_broker_error(e: BrokerError) -> tuple:
    """Handle errors raised by broker operations."""
    if e.kind == "Failed":
        ERRORS_TOTAL.labels(endpoint=request.endpoint or "unknown").inc()
        logger.warning(f"{request.endpoint} failed: {e.message}")
    return error_response(e)


@app.errorhandler(404)
def handle_not_found(e: Exception) -> tuple:
    """Handle 404 errors."""
    return api_error("Resource not found", 404, kind="InvalidArgs")


@app.errorhandler(405)
def handle_method_not_allowed(e: Exception) -> tuple:
    return api_error("Method not allowed", 405, kind="InvalidArgs")


@app.errorhandler(500)
def handle_server_error(e: Exception) -> tuple:
    """Handle 500 errors."""
    ERRORS_TOTAL.labels(endpoint="app_500").inc()
    logger.error(f"Internal server error: {e}")
    return api_error("Internal server error", 500, kind="Failed")


# =============================================================================
# Startup
# =============================================================================

# Revert every tracked change when the worker exits
atexit.register(broker.shutdown)
broker.monitor.start()
logger.info("CouchPlay broker ready")
