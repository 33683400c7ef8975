import unittest

from app import create_app
from app.config import Config
from app.contexts.approvals.domain.supplier_refs import Recipient
from app.contexts.notifications.application.dispatcher import KIND_RFQ_PUBLISHED, NotificationDispatcher
from app.contexts.notifications.domain.transport import MailDeliveryError, MailTransport
from app.contexts.notifications.infrastructure.outbox import (
    _next_backoff_seconds,
    enqueue_notification,
    process_notification_outbox,
)
from app.contexts.notifications.infrastructure.tokens import PURPOSE_QUOTE, TokenService
from app.db import close_db, get_db
from app.observability import reset_metrics_for_tests
from tests.helpers.temp_db import TempDbSandbox


class _ScriptedTransport(MailTransport):
    """Fails for configured recipients; remembers what was delivered."""

    def __init__(self, failures=None) -> None:
        self.failures = dict(failures or {})
        self.delivered = []

    def send_one(self, to_address: str, subject: str, html_body: str) -> None:
        failure = self.failures.get(to_address)
        if failure is not None:
            raise failure
        self.delivered.append({"to": to_address, "subject": subject, "html": html_body})


def _build_temp_app(temp_db: TempDbSandbox, **overrides):
    attrs = {
        "TESTING": True,
        "AUTH_ENABLED": False,
        "NOTIFICATION_OUTBOX_MIN_BACKOFF_SECONDS": 30,
        "NOTIFICATION_OUTBOX_MAX_BACKOFF_SECONDS": 1800,
        "NOTIFICATION_OUTBOX_BACKOFF_JITTER_RATIO": 0.0,
        "NOTIFICATION_OUTBOX_MAX_ATTEMPTS": 3,
    }
    attrs.update(overrides)
    return create_app(temp_db.make_config(Config, **attrs))


class NotificationOutboxTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="notification_outbox")
        self.app = _build_temp_app(self._temp_db)
        self.tenant_id = "tenant-outbox"
        self.tokens = TokenService("outbox-secret")
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def _dispatcher(self, transport: MailTransport) -> NotificationDispatcher:
        return NotificationDispatcher(
            transport,
            tenant_id=self.tenant_id,
            tokens=self.tokens,
            public_base_url="https://rfq.example.com/",
            concurrency=2,
        )

    def _outbox_rows(self, db) -> list:
        rows = db.execute(
            "SELECT id, recipient, status, attempts, last_error FROM notification_outbox ORDER BY id"
        ).fetchall()
        return [dict(row) for row in rows]

    def _make_due(self, db) -> None:
        db.execute("UPDATE notification_outbox SET next_attempt_at = '2000-01-01T00:00:00Z'")
        db.commit()

    def test_backoff_doubles_until_capped(self) -> None:
        with self.app.app_context():
            self.assertEqual(_next_backoff_seconds(1), 30.0)
            self.assertEqual(_next_backoff_seconds(2), 60.0)
            self.assertEqual(_next_backoff_seconds(3), 120.0)
            self.assertEqual(_next_backoff_seconds(12), 1800.0)

    def test_publish_fan_out_reports_each_supplier(self) -> None:
        transport = _ScriptedTransport(
            failures={"down@supplier.test": MailDeliveryError("connection reset", code="smtp_unavailable")}
        )
        recipients = [
            Recipient(supplier_id="1", email="ok@supplier.test"),
            Recipient(supplier_id="2", email=""),
            Recipient(supplier_id="3", email="down@supplier.test"),
        ]
        with self.app.app_context():
            db = get_db()
            results = self._dispatcher(transport).notify_rfq_published(
                db,
                {"id": 42, "title": "Valves", "fields": {"closeDateTime": "2026-11-01"}},
                recipients,
            )
            db.commit()

            payloads = [result.to_payload() for result in results]
            self.assertEqual(payloads[0], {"email": "ok@supplier.test", "sent": True, "error": None, "supplierId": "1"})
            self.assertEqual(payloads[1]["error"], "No email found for supplier id 2")
            self.assertFalse(payloads[1]["sent"])
            self.assertFalse(payloads[2]["sent"])
            self.assertTrue(payloads[2]["queuedForRetry"])

            rows = self._outbox_rows(db)
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0]["recipient"], "down@supplier.test")
            self.assertEqual(rows[0]["status"], "pending")
            self.assertEqual(rows[0]["attempts"], 1)

        html = transport.delivered[0]["html"]
        self.assertIn("https://rfq.example.com/supplier/submit-quote?token=", html)
        self.assertIn("https://rfq.example.com/sign-up", html)
        token = html.split("submit-quote?token=", 1)[1].split('"', 1)[0]
        claims = self.tokens.verify(token, purpose=PURPOSE_QUOTE)
        self.assertEqual(claims["rfqId"], 42)
        self.assertEqual(claims["supplierId"], "1")
        self.assertEqual(claims["tenant_id"], self.tenant_id)

    def test_definitive_failure_is_not_queued(self) -> None:
        transport = _ScriptedTransport(
            failures={"gone@supplier.test": MailDeliveryError("550 no such user", definitive=True)}
        )
        with self.app.app_context():
            db = get_db()
            results = self._dispatcher(transport).notify_rfq_published(
                db,
                {"id": 1, "title": "Pipes", "fields": {}},
                [Recipient(supplier_id="5", email="gone@supplier.test")],
            )
            db.commit()
            self.assertFalse(results[0].sent)
            self.assertFalse(results[0].queued_for_retry)
            self.assertEqual(self._outbox_rows(db), [])

    def test_outbox_waits_for_backoff_then_delivers(self) -> None:
        transport = _ScriptedTransport()
        with self.app.app_context():
            db = get_db()
            enqueue_notification(
                db,
                tenant_id=self.tenant_id,
                kind=KIND_RFQ_PUBLISHED,
                recipient="later@supplier.test",
                subject="New RFQ",
                html_body="<p>hi</p>",
                last_error="timeout",
            )
            db.commit()

            first = process_notification_outbox(db, transport, tenant_id=self.tenant_id)
            self.assertEqual(first["processed"], 0)

            self._make_due(db)
            second = process_notification_outbox(db, transport, tenant_id=self.tenant_id)
            self.assertEqual(second, {"processed": 1, "sent": 1, "requeued": 0, "dead_lettered": 0})
            row = self._outbox_rows(db)[0]
            self.assertEqual(row["status"], "sent")
            self.assertEqual(row["attempts"], 2)
            self.assertIsNone(row["last_error"])

        self.assertEqual([item["to"] for item in transport.delivered], ["later@supplier.test"])

    def test_retryable_failure_requeues_then_dead_letters(self) -> None:
        transport = _ScriptedTransport(failures={"flaky@supplier.test": MailDeliveryError("421 try later")})
        with self.app.app_context():
            db = get_db()
            enqueue_notification(
                db,
                tenant_id=self.tenant_id,
                kind=KIND_RFQ_PUBLISHED,
                recipient="flaky@supplier.test",
                subject="New RFQ",
                html_body="<p>hi</p>",
                last_error="421 try later",
            )
            db.commit()

            self._make_due(db)
            first = process_notification_outbox(db, transport)
            self.assertEqual(first["requeued"], 1)
            self.assertEqual(self._outbox_rows(db)[0]["status"], "pending")

            self._make_due(db)
            second = process_notification_outbox(db, transport)
            self.assertEqual(second["dead_lettered"], 1)
            row = self._outbox_rows(db)[0]
            self.assertEqual(row["status"], "failed")
            self.assertEqual(row["attempts"], 3)
            self.assertIn("421", row["last_error"])

    def test_tenant_filter_leaves_other_workspaces_alone(self) -> None:
        transport = _ScriptedTransport()
        with self.app.app_context():
            db = get_db()
            for tenant_id in (self.tenant_id, "tenant-other"):
                enqueue_notification(
                    db,
                    tenant_id=tenant_id,
                    kind=KIND_RFQ_PUBLISHED,
                    recipient=f"{tenant_id}@supplier.test",
                    subject="New RFQ",
                    html_body="<p>hi</p>",
                    last_error=None,
                )
            db.commit()
            self._make_due(db)

            summary = process_notification_outbox(db, transport, tenant_id="tenant-other")

            self.assertEqual(summary["sent"], 1)
            self.assertEqual([item["to"] for item in transport.delivered], ["tenant-other@supplier.test"])


if __name__ == "__main__":
    unittest.main()
