from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from flask import current_app

from app.contexts.approvals.application.rfq_views import mail_view, resolve_recipients, rfq_payload
from app.contexts.approvals.domain.workflow import normalize_action
from app.contexts.approvals.infrastructure.repositories import (
    PauseRequestRepository,
    RfqRepository,
    StatusEventRepository,
    SupplierRepository,
)
from app.contexts.notifications.application.dispatcher import NotificationDispatcher
from app.core import EventBus, RfqPaused, RfqResumed, get_event_bus
from app.domain.contracts import Actor, PauseDecisionInput, RfqPauseInput, ServiceOutput
from app.errors import AppError, ConflictError, NotFoundError
from app.ui_strings import success_message


PAUSE_PENDING = "pending"
PAUSE_APPROVED = "approved"
PAUSE_REJECTED = "rejected"

_DECISION_STATUS = {"approve": PAUSE_APPROVED, "reject": PAUSE_REJECTED}


def pause_request_payload(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "rfqId": row["rfq_id"],
        "status": row["status"],
        "reason": row.get("reason"),
        "notifySuppliers": bool(row.get("notify_suppliers")),
        "requestedBy": row.get("requested_by"),
        "requestedAt": row.get("requested_at"),
        "processedBy": row.get("processed_by"),
        "processedAt": row.get("processed_at"),
        "decisionNote": row.get("decision_note"),
    }


class PauseService:
    """Pausing and resuming published RFQs, optionally behind an admin-approved request."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        dispatcher_factory: Callable[[str], NotificationDispatcher] | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.dispatcher_factory = dispatcher_factory or NotificationDispatcher.for_current_app

    @staticmethod
    def _load_rfq(db, rfqs: RfqRepository, rfq_id: int) -> dict:
        rfq = rfqs.get_by_id(db, rfq_id)
        if not rfq:
            raise NotFoundError(code="rfq_not_found")
        return rfq

    @staticmethod
    def _ensure_pausable(rfq: Mapping[str, Any]) -> None:
        if rfq.get("status") == "paused":
            raise ConflictError(code="rfq_already_paused")
        if rfq.get("status") != "published" or not bool(rfq.get("published")):
            raise ConflictError(code="rfq_not_published", payload={"status": rfq.get("status")})

    def _apply_pause(self, db, *, tenant_id: str, rfq_id: int, reason: str | None, actor: Actor) -> None:
        if not RfqRepository(tenant_id=tenant_id).pause(db, rfq_id):
            raise ConflictError(code="rfq_not_published")
        StatusEventRepository(tenant_id=tenant_id).add_event(
            db,
            entity="rfq",
            entity_id=rfq_id,
            from_status="published",
            to_status="paused",
            reason=reason,
            actor=actor.email,
        )

    def _after_pause(
        self,
        db,
        *,
        tenant_id: str,
        rfq: Mapping[str, Any],
        reason: str | None,
        notify_suppliers: bool,
        actor: Actor,
    ) -> List[Dict[str, Any]]:
        rfq_id = int(rfq["id"])
        self.event_bus.publish(RfqPaused(tenant_id=tenant_id, rfq_id=rfq_id, reason=reason or "", actor=actor.email))
        current_app.logger.info(
            "rfq_paused",
            extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "reason": reason, "actor": actor.email},
        )
        if not notify_suppliers:
            return []
        recipients = resolve_recipients(db, SupplierRepository(tenant_id=tenant_id), rfq)
        results = self.dispatcher_factory(tenant_id).notify_rfq_paused(
            db, mail_view(rfq), recipients, reason=reason, paused_by=actor.email
        )
        db.commit()
        return [result.to_payload() for result in results]

    def pause(self, db, *, tenant_id: str, pause_input: RfqPauseInput, actor: Actor) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        rfq = self._load_rfq(db, rfqs, pause_input.rfq_id)
        self._ensure_pausable(rfq)
        reason = (pause_input.reason or "").strip() or None

        if bool(current_app.config.get("RFQ_PAUSE_REQUIRES_APPROVAL")) and not actor.is_admin:
            return self._request_pause(db, tenant_id=tenant_id, rfq=rfq, pause_input=pause_input, actor=actor)

        try:
            self._apply_pause(db, tenant_id=tenant_id, rfq_id=int(rfq["id"]), reason=reason, actor=actor)
        except AppError:
            db.rollback()
            raise
        db.commit()

        updated = rfqs.get_by_id(db, int(rfq["id"])) or rfq
        notifications = self._after_pause(
            db,
            tenant_id=tenant_id,
            rfq=updated,
            reason=reason,
            notify_suppliers=bool(pause_input.notify_suppliers),
            actor=actor,
        )
        return ServiceOutput(
            {
                "message": success_message("rfq_paused"),
                "rfq": rfq_payload(updated),
                "pauseRequest": None,
                "notifications": notifications,
            }
        )

    def _request_pause(
        self,
        db,
        *,
        tenant_id: str,
        rfq: Mapping[str, Any],
        pause_input: RfqPauseInput,
        actor: Actor,
    ) -> ServiceOutput:
        requests = PauseRequestRepository(tenant_id=tenant_id)
        rfq_id = int(rfq["id"])
        reason = (pause_input.reason or "").strip() or None
        existing = requests.pending_for_rfq(db, rfq_id)
        if existing:
            raise ConflictError(code="pause_request_pending", payload={"pause_request_id": existing["id"]})

        request_id = requests.create(
            db,
            rfq_id=rfq_id,
            requested_by=actor.email,
            reason=reason,
            notify_suppliers=bool(pause_input.notify_suppliers),
        )
        StatusEventRepository(tenant_id=tenant_id).add_event(
            db,
            entity="pause_request",
            entity_id=request_id,
            from_status=None,
            to_status=PAUSE_PENDING,
            reason=reason,
            actor=actor.email,
        )
        db.commit()
        current_app.logger.info(
            "rfq_pause_requested",
            extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "pause_request_id": request_id, "actor": actor.email},
        )
        return ServiceOutput(
            {
                "message": success_message("pause_requested"),
                "rfq": rfq_payload(rfq),
                "pauseRequest": pause_request_payload(requests.get_by_id(db, request_id) or {}),
                "notifications": [],
            },
            202,
        )

    def resume(self, db, *, tenant_id: str, rfq_id: int, notify_suppliers: bool, actor: Actor) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        rfq = self._load_rfq(db, rfqs, rfq_id)
        if rfq.get("status") != "paused":
            raise ConflictError(code="rfq_not_paused", payload={"status": rfq.get("status")})
        if not rfqs.resume(db, rfq_id):
            raise ConflictError(code="rfq_not_paused")
        StatusEventRepository(tenant_id=tenant_id).add_event(
            db,
            entity="rfq",
            entity_id=rfq_id,
            from_status="paused",
            to_status="published",
            actor=actor.email,
        )
        db.commit()

        updated = rfqs.get_by_id(db, rfq_id) or rfq
        self.event_bus.publish(RfqResumed(tenant_id=tenant_id, rfq_id=rfq_id, actor=actor.email))
        current_app.logger.info("rfq_resumed", extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "actor": actor.email})

        notifications: List[Dict[str, Any]] = []
        if notify_suppliers:
            recipients = resolve_recipients(db, SupplierRepository(tenant_id=tenant_id), updated)
            results = self.dispatcher_factory(tenant_id).notify_rfq_resumed(
                db, mail_view(updated), recipients, resumed_by=actor.email
            )
            db.commit()
            notifications = [result.to_payload() for result in results]
        return ServiceOutput(
            {
                "message": success_message("rfq_resumed"),
                "rfq": rfq_payload(updated),
                "notifications": notifications,
            }
        )

    def list_requests(
        self,
        db,
        *,
        tenant_id: str,
        status: str | None = None,
        rfq_id: int | None = None,
    ) -> ServiceOutput:
        rows = PauseRequestRepository(tenant_id=tenant_id).list_requests(db, status=status, rfq_id=rfq_id)
        return ServiceOutput({"items": [pause_request_payload(row) for row in rows]})

    def decide(self, db, *, tenant_id: str, decision_input: PauseDecisionInput, actor: Actor) -> ServiceOutput:
        action = normalize_action(decision_input.action)
        requests = PauseRequestRepository(tenant_id=tenant_id)
        pause_request = requests.get_by_id(db, decision_input.request_id)
        if not pause_request:
            raise NotFoundError(code="pause_request_not_found")
        if pause_request["status"] != PAUSE_PENDING:
            raise ConflictError(code="pause_request_not_pending", payload={"status": pause_request["status"]})

        to_status = _DECISION_STATUS[action]
        note = (decision_input.note or "").strip() or None
        rfq_id = int(pause_request["rfq_id"])
        try:
            if not requests.transition(
                db,
                int(pause_request["id"]),
                to_status=to_status,
                processed_by=actor.email,
                decision_note=note,
            ):
                raise ConflictError(code="pause_request_not_pending")
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity="pause_request",
                entity_id=int(pause_request["id"]),
                from_status=PAUSE_PENDING,
                to_status=to_status,
                reason=note,
                actor=actor.email,
            )
            if to_status == PAUSE_APPROVED:
                self._apply_pause(db, tenant_id=tenant_id, rfq_id=rfq_id, reason=pause_request.get("reason"), actor=actor)
        except AppError:
            db.rollback()
            raise
        db.commit()
        current_app.logger.info(
            "rfq_pause_request_decided",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq_id,
                "pause_request_id": pause_request["id"],
                "status": to_status,
                "actor": actor.email,
            },
        )

        rfq = RfqRepository(tenant_id=tenant_id).get_by_id(db, rfq_id) or {}
        notifications: List[Dict[str, Any]] = []
        if to_status == PAUSE_APPROVED:
            notifications = self._after_pause(
                db,
                tenant_id=tenant_id,
                rfq=rfq,
                reason=pause_request.get("reason"),
                notify_suppliers=bool(pause_request.get("notify_suppliers")),
                actor=actor,
            )
        message_key = "pause_request_approved" if to_status == PAUSE_APPROVED else "pause_request_rejected"
        return ServiceOutput(
            {
                "message": success_message(message_key),
                "pauseRequest": pause_request_payload(requests.get_by_id(db, int(pause_request["id"])) or {}),
                "rfq": rfq_payload(rfq),
                "notifications": notifications,
            }
        )
