"""
Metrics and structured logging for the broker.

Every external tool run, every polkit decision and the amount of privileged
state awaiting cleanup are exported on /metrics next to the per-route
metrics of prometheus_flask_exporter. Log records are emitted as JSON lines.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from flask import Flask, Response
from prometheus_client import Counter, Gauge, Histogram
from prometheus_flask_exporter import PrometheusMetrics

if TYPE_CHECKING:
    from couchbroker.container import Broker

# =============================================================================
# Prometheus Custom Metrics
# =============================================================================

EXTERNAL_COMMANDS = Counter(
    "broker_external_commands_total",
    "External tool invocations by outcome (ok, failed, timeout)",
    ["tool", "outcome"],
)

EXTERNAL_COMMAND_DURATION = Histogram(
    "broker_external_command_duration_seconds",
    "Wall time of external tool invocations",
    ["tool"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 120),
)

AUTHORIZATION_DECISIONS = Counter(
    "broker_authorization_decisions_total",
    "Authorization gate decisions",
    ["action", "result"],
)

TRACKED_RESOURCES = Gauge(
    "broker_tracked_resources",
    "Privileged state currently tracked for cleanup",
    ["kind"],
)

ERRORS_TOTAL = Counter(
    "broker_errors_total",
    "Total number of errors by endpoint",
    ["endpoint"],
)


# =============================================================================
# Metrics Initialization
# =============================================================================

def init_metrics(app: Flask) -> PrometheusMetrics:
    """Expose /metrics on *app* and instrument its routes (not rate limited)."""
    metrics = PrometheusMetrics(app, path="/metrics")

    # Exempt /metrics from rate limiting
    from couchbroker.api.rate_limit import limiter
    metrics_view = app.view_functions.get("prometheus_metrics")
    if metrics_view is not None:
        limiter.exempt(metrics_view)

    return metrics


# =============================================================================
# JSON Structured Logging
# =============================================================================

def setup_json_logging(level: str = "INFO") -> None:
    """
    Send every record of the root logger to stderr as one JSON object.

    The audit logger keeps its own stdout handler and does not propagate.
    """
    from pythonjsonlogger.json import JsonFormatter

    handler = logging.StreamHandler(sys.stderr)
    formatter = JsonFormatter(
        fmt="%(timestamp)s %(name)s %(levelname)s %(message)s",
        rename_fields={"levelname": "level", "asctime": "timestamp"},
        timestamp=True,
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


# =============================================================================
# Tracked State Collection
# =============================================================================

def collect_tracked_metrics(broker: Broker) -> None:
    """Update the tracked-resource gauges from the broker's bookkeeping."""
    for kind, count in broker.tracked_counts().items():
        TRACKED_RESOURCES.labels(kind=kind).set(count)


def refresh_tracked_metrics(response: Response) -> Response:
    """
    after_request hook that refreshes the tracked-resource gauges.

    Runs on the dispatch thread, the only writer of the device, grant
    and mount bookkeeping.
    """
    from couchbroker.container import get_broker

    collect_tracked_metrics(get_broker())
    return response


def collect_process_metrics(broker: Broker) -> None:
    """Update only the instance gauge; safe from the monitor thread."""
    TRACKED_RESOURCES.labels(kind="processes").set(len(broker.processes.tracked))
