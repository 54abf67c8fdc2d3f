"""
Tests for the observability module (Prometheus metrics + JSON logging).
"""

import json
import logging

import pytest
from prometheus_client import REGISTRY


# ---------------------------------------------------------------------------
# Metrics endpoint
# ---------------------------------------------------------------------------

class TestMetricsEndpoint:
    """Tests for the /metrics Prometheus endpoint."""

    def test_metrics_endpoint_accessible(self, app_client):
        """GET /metrics returns 200 with Prometheus text content."""
        resp = app_client.get("/metrics")
        assert resp.status_code == 200
        body = resp.data.decode()
        assert "# HELP" in body or "# TYPE" in body

    def test_metrics_without_credentials(self, app_client, mocker):
        """/metrics sits outside the blueprint's caller check."""
        mocker.patch("couchbroker.api.auth.peer_credentials", return_value=None)
        resp = app_client.get("/metrics")
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Broker metrics
# ---------------------------------------------------------------------------

class TestBrokerMetrics:

    def test_metrics_registered(self):
        import couchbroker.observability  # noqa: F401

        names = {m.name for m in REGISTRY.collect()}
        assert "broker_external_commands" in names
        assert "broker_external_command_duration_seconds" in names
        assert "broker_authorization_decisions" in names
        assert "broker_tracked_resources" in names

    def test_error_counter_increments(self):
        from couchbroker.observability import ERRORS_TOTAL

        before = ERRORS_TOTAL.labels(endpoint="test")._value.get()
        ERRORS_TOTAL.labels(endpoint="test").inc()
        assert ERRORS_TOTAL.labels(endpoint="test")._value.get() == before + 1

    def test_failed_operation_counted(self, app_client, fs):
        """A Failed error increments broker_errors_total for its endpoint."""
        from couchbroker.observability import ERRORS_TOTAL

        counter = ERRORS_TOTAL.labels(endpoint="api.change_device_owner")
        before = counter._value.get()
        fs.fail_on("chown", "/dev/input/event5")
        app_client.post("/api/devices/owner", json={"path": "/dev/input/event5", "uid": 1001})
        assert counter._value.get() == before + 1

    def test_collect_tracked_metrics(self, broker):
        from couchbroker.observability import TRACKED_RESOURCES, collect_tracked_metrics

        broker.mounts.mount("alice", 1000, ["/home/bob/Games"])
        collect_tracked_metrics(broker)

        assert TRACKED_RESOURCES.labels(kind="mounts")._value.get() == 1.0
        assert TRACKED_RESOURCES.labels(kind="processes")._value.get() == 0.0


# ---------------------------------------------------------------------------
# JSON logging
# ---------------------------------------------------------------------------

class TestJsonLogging:
    """Tests for structured JSON logging setup."""

    def test_json_logging_format(self, capfd):
        """After setup_json_logging, log output is valid JSON."""
        from couchbroker.observability import setup_json_logging

        setup_json_logging(level="DEBUG")

        test_logger = logging.getLogger("test.json_format")
        test_logger.info("device handed over")

        captured = capfd.readouterr()
        for line in captured.err.strip().splitlines():
            if "device handed over" in line:
                parsed = json.loads(line)
                assert parsed["message"] == "device handed over"
                assert "timestamp" in parsed
                assert parsed["level"] == "INFO"
                break
        else:
            pytest.fail("JSON log line with expected message not found in stderr")

    def test_sensitive_values_masked(self, app_client):
        from couchbroker.app import SensitiveDataFilter

        record = logging.LogRecord("couchplay-broker", logging.INFO, __file__, 1,
                                   "launch env token=abc123", None, None)
        SensitiveDataFilter().filter(record)
        assert record.msg == "launch env token=***"


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class TestAuditLog:

    def test_write_request_audited(self, app_client, mocker):
        audit = mocker.patch("couchbroker.api.audit.audit_logger")
        app_client.post("/api/users/alice/linger")

        entry = audit.info.call_args.args[0]
        assert entry["event"] == "broker_action"
        assert entry["username"] == "alice"
        assert entry["caller_uid"] == 1000
        assert entry["caller_pid"] == 4242
        assert entry["status_code"] == 200

    def test_read_request_not_audited(self, app_client, mocker):
        audit = mocker.patch("couchbroker.api.audit.audit_logger")
        app_client.get("/api/users/alice/linger")
        audit.info.assert_not_called()
