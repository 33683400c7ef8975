import unittest

from app import create_app
from app.config import Config
from app.core import EventBus, RfqPaused, RfqResumed
from app.contexts.approvals.infrastructure.repositories import StatusEventRepository
from app.db import close_db, get_db
from app.observability import reset_metrics_for_tests
from app.routes import approval_routes
from app.ui_strings import email_subject, success_message
from tests.helpers.approval_api import ApprovalApi, token_from_link
from tests.helpers.temp_db import TempDbSandbox


SUPPLIER_EMAIL = "bids@supplier.test"


class RfqPauseTestCase(unittest.TestCase):
    tenant_id = "tenant-pause"
    config_overrides: dict = {}

    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="rfq_pause")
        attrs = {"TESTING": True, "AUTH_ENABLED": False, "MAIL_SERVER": None}
        attrs.update(self.config_overrides)
        self.app = create_app(self._temp_db.make_config(Config, **attrs))
        self.client = self.app.test_client()
        self.api = ApprovalApi(self, self.client, self.tenant_id)
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    @property
    def supplier_mail(self) -> list:
        return [message for message in self.app.extensions["mail_transport"].outbox if message["to"] == SUPPLIER_EMAIL]

    def _published_rfq(self) -> dict:
        rfq = self.api.create_rfq(
            "Steel beams",
            {"currency": "USD", "closeDateTime": "2026-11-01T17:00:00Z"},
            [{"name": "Beam Supply", "email": SUPPLIER_EMAIL}],
        )
        submitted = self.api.submit(rfq["id"])
        self.assertTrue(submitted["rfq"]["published"])
        return submitted["rfq"]

    def _pause(self, rfq_id: int, headers=None, **body):
        return self.client.post(f"/api/rfqs/{rfq_id}/pause", headers=headers or self.api.buyer, json=body)

    def _resume(self, rfq_id: int, **body):
        return self.client.post(f"/api/rfqs/{rfq_id}/resume", headers=self.api.buyer, json=body)


class RfqPauseApiTest(RfqPauseTestCase):
    def test_pause_and_resume_notify_suppliers(self) -> None:
        rfq = self._published_rfq()
        token = token_from_link(self.supplier_mail[0]["html"], "submit-quote?token=")

        paused = self._pause(rfq["id"], reason="Budget review")

        self.assertEqual(paused.status_code, 200, paused.get_data(as_text=True))
        payload = paused.get_json()
        self.assertEqual(payload["message"], success_message("rfq_paused"))
        self.assertEqual(payload["rfq"]["status"], "paused")
        self.assertTrue(payload["rfq"]["paused"])
        self.assertTrue(payload["rfq"]["published"])
        self.assertIsNone(payload["pauseRequest"])
        self.assertEqual(len(payload["notifications"]), 1)
        self.assertEqual(self.supplier_mail[-1]["subject"], email_subject("rfq_paused_subject", title="Steel beams"))
        self.assertIn("Budget review", self.supplier_mail[-1]["html"])

        blocked = self.client.get(f"/api/supplier/quote-access?token={token}")
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.get_json()["error"], "rfq_paused")

        with self.app.app_context():
            history = StatusEventRepository(tenant_id=self.tenant_id).list_for_entity(
                get_db(), entity="rfq", entity_id=rfq["id"]
            )
        self.assertEqual(history[0]["to_status"], "paused")
        self.assertEqual(history[0]["reason"], "Budget review")

        resumed = self._resume(rfq["id"])

        self.assertEqual(resumed.status_code, 200)
        self.assertEqual(resumed.get_json()["rfq"]["status"], "published")
        self.assertFalse(resumed.get_json()["rfq"]["paused"])
        self.assertEqual(self.supplier_mail[-1]["subject"], email_subject("rfq_resumed_subject", title="Steel beams"))
        self.assertEqual(self.client.get(f"/api/supplier/quote-access?token={token}").status_code, 200)

    def test_suppliers_can_be_left_out(self) -> None:
        rfq = self._published_rfq()
        mails_before = len(self.supplier_mail)

        paused = self._pause(rfq["id"], notifySuppliers="false")
        resumed = self._resume(rfq["id"], notifySuppliers=False)

        self.assertEqual(paused.status_code, 200)
        self.assertEqual(paused.get_json()["notifications"], [])
        self.assertEqual(resumed.status_code, 200)
        self.assertEqual(len(self.supplier_mail), mails_before)

    def test_only_published_rfqs_pause(self) -> None:
        draft = self.api.create_rfq("Draft", {"currency": "USD"})
        refused = self._pause(draft["id"])
        self.assertEqual(refused.status_code, 409)
        self.assertEqual(refused.get_json()["error"], "rfq_not_published")

        rfq = self._published_rfq()
        self.assertEqual(self._pause(rfq["id"]).status_code, 200)
        twice = self._pause(rfq["id"])
        self.assertEqual(twice.status_code, 409)
        self.assertEqual(twice.get_json()["error"], "rfq_already_paused")

        self.assertEqual(self._resume(rfq["id"]).status_code, 200)
        again = self._resume(rfq["id"])
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "rfq_not_paused")

    def test_missing_rfq(self) -> None:
        response = self._pause(404)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "rfq_not_found")

    def test_pause_and_resume_publish_events(self) -> None:
        rfq = self._published_rfq()
        bus = EventBus()
        received = []
        bus.subscribe(RfqPaused, received.append)
        bus.subscribe(RfqResumed, received.append)
        service = approval_routes._PAUSE_SERVICE
        original_bus = service.event_bus
        service.event_bus = bus
        try:
            self._pause(rfq["id"], reason="Drawing revision")
            self._resume(rfq["id"])
        finally:
            service.event_bus = original_bus

        self.assertEqual([event.event_type for event in received], ["RfqPaused", "RfqResumed"])
        self.assertEqual(received[0].reason, "Drawing revision")
        self.assertEqual(received[0].rfq_id, rfq["id"])


class RfqPauseApprovalTest(RfqPauseTestCase):
    config_overrides = {"RFQ_PAUSE_REQUIRES_APPROVAL": True}

    def _decide(self, request_id: int, action: str, headers=None):
        return self.client.post(
            f"/api/pause-requests/{request_id}/decide",
            headers=headers or self.api.admin,
            json={"action": action, "note": "checked"},
        )

    def test_buyer_pause_waits_for_an_admin(self) -> None:
        rfq = self._published_rfq()
        mails_before = len(self.supplier_mail)

        requested = self._pause(rfq["id"], reason="Supplier dispute")

        self.assertEqual(requested.status_code, 202)
        payload = requested.get_json()
        self.assertEqual(payload["message"], success_message("pause_requested"))
        self.assertEqual(payload["rfq"]["status"], "published")
        pause_request = payload["pauseRequest"]
        self.assertEqual(pause_request["status"], "pending")
        self.assertEqual(pause_request["reason"], "Supplier dispute")
        self.assertEqual(len(self.supplier_mail), mails_before)

        duplicate = self._pause(rfq["id"])
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.get_json()["error"], "pause_request_pending")

        denied = self._decide(pause_request["id"], "approve", headers=self.api.buyer)
        self.assertEqual(denied.status_code, 403)

        approved = self._decide(pause_request["id"], "approve")

        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.get_json()["pauseRequest"]["status"], "approved")
        self.assertEqual(approved.get_json()["pauseRequest"]["processedBy"], "admin@demo.com")
        self.assertEqual(approved.get_json()["rfq"]["status"], "paused")
        self.assertEqual(len(self.supplier_mail), mails_before + 1)
        self.assertIn("Supplier dispute", self.supplier_mail[-1]["html"])

        listed = self.client.get(f"/api/pause-requests?rfqId={rfq['id']}", headers=self.api.buyer).get_json()
        self.assertEqual([item["status"] for item in listed["items"]], ["approved"])

    def test_rejected_request_leaves_the_rfq_published(self) -> None:
        rfq = self._published_rfq()
        pause_request = self._pause(rfq["id"]).get_json()["pauseRequest"]

        rejected = self._decide(pause_request["id"], "reject")

        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.get_json()["pauseRequest"]["status"], "rejected")
        self.assertEqual(rejected.get_json()["rfq"]["status"], "published")
        again = self._decide(pause_request["id"], "approve")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "pause_request_not_pending")

    def test_admin_pauses_directly(self) -> None:
        rfq = self._published_rfq()
        response = self._pause(rfq["id"], headers=self.api.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["rfq"]["status"], "paused")

    def test_approving_after_the_rfq_changed_state_keeps_the_request_pending(self) -> None:
        rfq = self._published_rfq()
        pause_request = self._pause(rfq["id"]).get_json()["pauseRequest"]
        self.assertEqual(self._pause(rfq["id"], headers=self.api.admin).status_code, 200)

        stale = self._decide(pause_request["id"], "approve")

        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.get_json()["error"], "rfq_not_published")
        listed = self.client.get("/api/pause-requests?status=pending", headers=self.api.buyer).get_json()
        self.assertEqual([item["id"] for item in listed["items"]], [pause_request["id"]])


if __name__ == "__main__":
    unittest.main()
