import unittest

from app import create_app
from app.config import Config
from app.contexts.approvals.application.approval_service import ApprovalService
from app.core import (
    ApprovalRunCompleted,
    ApprovalRunStarted,
    ApprovalStepDecided,
    DomainEvent,
    EventBus,
    RfqPublished,
)
from app.db import close_db, get_db
from app.domain.contracts import Actor, ApprovalDecisionInput
from app.observability import metrics_snapshot, reset_metrics_for_tests
from tests.helpers.approval_api import ApprovalApi
from tests.helpers.temp_db import TempDbSandbox


class _SilentDispatcher:
    def notify_approver(self, db, step, rfq):
        _ = (db, step, rfq)
        return _Delivered()

    def notify_rfq_published(self, db, rfq, recipients):
        _ = (db, rfq, recipients)
        return []


class _Delivered:
    sent = True

    def to_payload(self) -> dict:
        return {"sent": True}


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        def first_handler(_event):
            execution_trace.append("first")

        def second_handler(_event):
            execution_trace.append("second")

        bus.subscribe(ApprovalRunStarted, first_handler)
        bus.subscribe(ApprovalRunStarted, second_handler)
        bus.publish(ApprovalRunStarted(tenant_id="tenant-a", rfq_id=1, run_id=1, step_count=2))

        self.assertEqual(execution_trace, ["first", "second"])

    def test_failing_handler_does_not_block_the_rest(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("boom")

        bus.subscribe(RfqPublished, broken)
        bus.subscribe(RfqPublished, received.append)
        bus.publish(RfqPublished(tenant_id="tenant-a", rfq_id=3, supplier_count=2))

        self.assertEqual(len(received), 1)

    def test_base_class_subscribers_see_every_event(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe(DomainEvent, lambda event: seen.append(event.event_type))
        bus.subscribe(RfqPublished, lambda _event: seen.append("specific"))

        bus.publish(RfqPublished(tenant_id="tenant-a", rfq_id=3))
        bus.publish(ApprovalRunStarted(tenant_id="tenant-a", rfq_id=3, run_id=1, step_count=1))

        self.assertEqual(seen, ["RfqPublished", "specific", "ApprovalRunStarted"])

    def test_workspace_defaults_to_tenant(self) -> None:
        event = ApprovalRunCompleted(tenant_id=" tenant-b ", rfq_id=1, run_id=2, status="APPROVED")
        self.assertEqual(event.workspace_id, "tenant-b")
        self.assertTrue(event.event_id)
        self.assertIsNotNone(event.occurred_at.tzinfo)


class ApprovalServiceEventsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="approval_events")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True, AUTH_ENABLED=False, MAIL_SERVER=None))
        self.client = self.app.test_client()
        self.tenant_id = "tenant-events"
        self.api = ApprovalApi(self, self.client, self.tenant_id)
        self.bus = EventBus()
        self.received = []
        for event_type in (ApprovalRunStarted, ApprovalStepDecided, ApprovalRunCompleted, RfqPublished):
            self.bus.subscribe(event_type, self.received.append)
        self.service = ApprovalService(event_bus=self.bus, dispatcher_factory=lambda _tenant: _SilentDispatcher())
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_submit_and_decide_emit_lifecycle_events(self) -> None:
        manager = self.api.create_approver("Maria Manager", "manager@demo.com", "Manager")
        self.api.save_template([{"approverId": manager["id"]}])
        rfq = self.api.create_rfq("Events", {"currency": "USD"})

        with self.app.test_request_context():
            db = get_db()
            submitted = self.service.submit(
                db,
                tenant_id=self.tenant_id,
                rfq_id=rfq["id"],
                actor=Actor(email="buyer@demo.com", role="buyer"),
            )
            step_id = submitted.payload["run"]["steps"][0]["id"]
            self.service.decide(
                db,
                tenant_id=self.tenant_id,
                decision_input=ApprovalDecisionInput(step_id=step_id, action="approve"),
                actor=Actor(email="manager@demo.com", role="approver"),
            )

        names = [type(event).__name__ for event in self.received]
        self.assertEqual(names, ["ApprovalRunStarted", "ApprovalStepDecided", "ApprovalRunCompleted", "RfqPublished"])
        started = self.received[0]
        self.assertEqual(started.tenant_id, self.tenant_id)
        self.assertEqual(started.rfq_id, rfq["id"])
        self.assertEqual(started.step_count, 1)
        self.assertEqual(self.received[1].action, "approve")
        self.assertEqual(self.received[2].status, "APPROVED")

        snapshot = metrics_snapshot()
        self.assertEqual(snapshot["domain_events"]["by_type"].get("ApprovalRunStarted"), 1)
        self.assertEqual(snapshot["approval_decisions_total"], 1)


if __name__ == "__main__":
    unittest.main()
