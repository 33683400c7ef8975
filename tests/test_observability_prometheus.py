import json
import logging
import unittest

from app import create_app
from app.config import Config
from app.core import ApprovalRunStarted, get_event_bus
from app.db import close_db
from app.observability import (
    JsonLogFormatter,
    observe_notification_retry_backoff,
    reset_metrics_for_tests,
    set_log_request_id,
)
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = True
    AUTH_ENABLED = False
    MAIL_SERVER = None


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        get_event_bus().publish(ApprovalRunStarted(tenant_id="tenant-metrics", rfq_id=99, run_id=1, step_count=2))
        observe_notification_retry_backoff(45)

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        content_type = response.headers.get("Content-Type") or ""
        self.assertIn("text/plain", content_type)

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn("approval_decision_total", payload)
        self.assertIn("approval_run_completed_total", payload)
        self.assertIn("notification_delivery_total", payload)
        self.assertIn('notification_outbox_queue_size{state="pending"} 0', payload)
        self.assertIn("notification_outbox_retry_count 0", payload)
        self.assertIn("notification_dead_letter_total 0", payload)
        self.assertIn('notification_retry_backoff_seconds_bucket{le="60"} 1', payload)
        self.assertIn("domain_event_emitted_total", payload)
        self.assertIn('event_type="ApprovalRunStarted"', payload)
        self.assertIn('route="/api/unknown"', payload)

    def test_approval_traffic_shows_up_in_counters(self) -> None:
        headers = {"X-Tenant-Id": "tenant-metrics", "X-Actor-Email": "buyer@demo.com", "X-Actor-Role": "buyer"}
        created = self.client.post("/api/rfqs", headers=headers, json={"title": "Auto", "fields": {}})
        self.assertEqual(created.status_code, 201)
        submitted = self.client.post(f"/api/rfqs/{created.get_json()['id']}/submit", headers=headers)
        self.assertEqual(submitted.status_code, 201)

        payload = self.client.get("/metrics").get_data(as_text=True)
        self.assertIn('approval_run_completed_total{status="APPROVED"} 1', payload)
        self.assertIn('event_type="ApprovalRunCompleted"', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="app",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="worker_log",
            args=(),
            exc_info=None,
        )
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")

    def test_health_reports_outbox_backlog_flag(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}

        self.assertEqual(payload.get("db"), "sqlite")
        notifications = payload.get("notifications") or {}
        self.assertIn("backlog_critical", notifications)
        self.assertFalse(notifications["backlog_critical"])
        self.assertEqual(notifications["queue"]["pending_jobs"], 0)


if __name__ == "__main__":
    unittest.main()
