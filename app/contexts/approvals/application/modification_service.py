from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from flask import current_app

from app.contexts.approvals.application.rfq_views import (
    governed_values,
    mail_view,
    normalize_changes,
    resolve_recipients,
    rfq_payload,
    split_governed,
)
from app.contexts.approvals.domain.field_rules import (
    CANONICAL_FIELD_RULES,
    EDIT_APPLY,
    EDIT_QUEUE,
    FieldRule,
    ModificationPolicy,
    build_rule_index,
    evaluate_changes,
    should_notify_on_approval,
)
from app.contexts.approvals.domain.workflow import normalize_action
from app.contexts.approvals.infrastructure.repositories import (
    ApproverRepository,
    ModificationRequestRepository,
    ModificationRuleRepository,
    RfqRepository,
    StatusEventRepository,
    SupplierRepository,
)
from app.contexts.notifications.application.dispatcher import NotificationDispatcher
from app.contexts.notifications.application.templates import field_labels, template_error
from app.core import EventBus, ModificationDecided, ModificationRequested, get_event_bus
from app.domain.contracts import (
    Actor,
    ModificationDecisionInput,
    ModificationRulesInput,
    RfqEditInput,
    ServiceOutput,
    json_flag,
)
from app.errors import AppError, ConflictError, NotFoundError, PermissionError as AppPermissionError, ValidationError
from app.infrastructure.repositories.base import loads_json
from app.ui_strings import success_message


MODIFICATION_PENDING = "pending"
MODIFICATION_APPROVED = "approved"
MODIFICATION_REJECTED = "rejected"

_DECISION_STATUS = {"approve": MODIFICATION_APPROVED, "reject": MODIFICATION_REJECTED}


def modification_payload(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "rfqId": row["rfq_id"],
        "status": row["status"],
        "requestedBy": row.get("requested_by"),
        "requestedAt": row.get("requested_at"),
        "requestedFields": loads_json(row.get("requested_fields_json"), []),
        "summary": loads_json(row.get("summary_json"), {}),
        "note": row.get("note"),
        "processedBy": row.get("processed_by"),
        "processedAt": row.get("processed_at"),
        "decisionNote": row.get("decision_note"),
    }


def _rule_from_payload(raw: Any, position: int) -> FieldRule:
    if not isinstance(raw, Mapping):
        raise ValidationError(code="validation_error", details=f"field rule {position} must be an object")
    field_key = str(raw.get("fieldKey") or "").strip()
    if not field_key:
        raise ValidationError(code="validation_error", details=f"field rule {position} needs a fieldKey")
    return FieldRule(
        field_key=field_key,
        label=str(raw.get("label") or field_key).strip(),
        editable=json_flag(raw.get("editable"), name=f"{field_key}.editable", default=True),
        requires_approval=json_flag(raw.get("requiresApproval"), name=f"{field_key}.requiresApproval", default=False),
        notify_suppliers=json_flag(raw.get("notifySuppliers"), name=f"{field_key}.notifySuppliers", default=False),
    )


class ModificationService:
    """Field-level edit governance for RFQs that already reached suppliers."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        dispatcher_factory: Callable[[str], NotificationDispatcher] | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.dispatcher_factory = dispatcher_factory or NotificationDispatcher.for_current_app

    def _ensure_rules(self, db, tenant_id: str) -> dict:
        repository = ModificationRuleRepository(tenant_id=tenant_id)
        settings = repository.get_settings(db)
        if settings:
            return settings
        repository.replace(
            db,
            fields=CANONICAL_FIELD_RULES,
            approver_ids=[],
            notify_all_suppliers=False,
            subject=None,
            body=None,
            updated_by="system",
        )
        db.commit()
        current_app.logger.info(
            "modification_rules_seeded",
            extra={"tenant_id": tenant_id, "field_count": len(CANONICAL_FIELD_RULES)},
        )
        return repository.get_settings(db) or {}

    def load_policy(self, db, *, tenant_id: str) -> tuple[ModificationPolicy, dict, List[FieldRule]]:
        settings = self._ensure_rules(db, tenant_id)
        rules = ModificationRuleRepository(tenant_id=tenant_id).list_field_rules(db)
        policy = ModificationPolicy(
            rules=build_rule_index(rules),
            notify_all_suppliers=bool(settings.get("notify_all_suppliers")),
            unknown_field_policy=str(current_app.config.get("MODIFICATION_UNKNOWN_FIELD_POLICY") or "require_approval"),
        )
        return policy, settings, rules

    def get_rules(self, db, *, tenant_id: str) -> ServiceOutput:
        _policy, settings, rules = self.load_policy(db, tenant_id=tenant_id)
        return ServiceOutput(
            {
                "fields": [rule.to_payload() for rule in rules],
                "approvers": list(settings.get("approver_ids") or []),
                "notifyAllSuppliersOnAnyChange": bool(settings.get("notify_all_suppliers")),
                "supplierNotificationSubject": settings.get("supplier_notification_subject"),
                "supplierNotificationBody": settings.get("supplier_notification_body"),
                "updatedBy": settings.get("updated_by"),
                "updatedAt": settings.get("updated_at"),
            }
        )

    def save_rules(self, db, *, tenant_id: str, rules_input: ModificationRulesInput, actor: Actor) -> ServiceOutput:
        if not isinstance(rules_input.fields, list):
            raise ValidationError(code="validation_error", details="fields must be a list")
        rules = [_rule_from_payload(raw, position) for position, raw in enumerate(rules_input.fields, start=1)]
        build_rule_index(rules)

        try:
            approver_ids = sorted({int(value) for value in rules_input.approver_ids or []})
        except (TypeError, ValueError) as exc:
            raise ValidationError(code="invalid_approver_reference", details=str(exc)) from exc
        known = ApproverRepository(tenant_id=tenant_id).get_many(db, approver_ids)
        unknown = [value for value in approver_ids if value not in known]
        if unknown:
            raise ValidationError(code="invalid_approver_reference", payload={"approverIds": unknown})

        subject = (rules_input.subject or "").strip() or None
        body = (rules_input.body or "").strip() or None
        for name, template in (("supplierNotificationSubject", subject), ("supplierNotificationBody", body)):
            problem = template_error(template)
            if problem:
                raise ValidationError(code="invalid_notification_template", details=problem, payload={"field": name})

        ModificationRuleRepository(tenant_id=tenant_id).replace(
            db,
            fields=rules,
            approver_ids=approver_ids,
            notify_all_suppliers=bool(rules_input.notify_all_suppliers),
            subject=subject,
            body=body,
            updated_by=actor.email,
        )
        db.commit()
        current_app.logger.info(
            "modification_rules_saved",
            extra={"tenant_id": tenant_id, "field_count": len(rules), "actor": actor.email},
        )
        result = self.get_rules(db, tenant_id=tenant_id)
        return ServiceOutput({"message": success_message("rules_saved"), **result.payload})

    def _apply(self, db, rfqs: RfqRepository, rfq: Mapping[str, Any], updates: Mapping[str, Any]) -> dict:
        merged = governed_values(rfq)
        merged.update(updates)
        title, fields, suppliers, publish_on_approval = split_governed(merged)
        if not title:
            raise ValidationError(code="validation_error", details="title cannot be empty")
        rfqs.save_content(
            db,
            int(rfq["id"]),
            title=title,
            fields=fields,
            suppliers=suppliers,
            publish_on_approval=publish_on_approval,
        )
        return rfqs.get_by_id(db, int(rfq["id"])) or {}

    def _notify_change(
        self,
        db,
        *,
        tenant_id: str,
        rfq: Mapping[str, Any],
        changes: Mapping[str, Mapping[str, Any]],
        settings: Mapping[str, Any],
        rules: List[FieldRule],
    ) -> List[Dict[str, Any]]:
        recipients = resolve_recipients(db, SupplierRepository(tenant_id=tenant_id), rfq)
        results = self.dispatcher_factory(tenant_id).notify_rfq_changed(
            db,
            mail_view(rfq),
            recipients,
            changes,
            labels=field_labels(rules),
            subject_template=settings.get("supplier_notification_subject"),
            body_template=settings.get("supplier_notification_body"),
        )
        db.commit()
        return [result.to_payload() for result in results]

    def request_changes(self, db, *, tenant_id: str, edit_input: RfqEditInput, actor: Actor) -> ServiceOutput:
        if not isinstance(edit_input.changes, Mapping) or not edit_input.changes:
            raise ValidationError(code="no_changes")

        rfqs = RfqRepository(tenant_id=tenant_id)
        rfq = rfqs.get_by_id(db, edit_input.rfq_id)
        if not rfq:
            raise NotFoundError(code="rfq_not_found")
        if rfq.get("approval_status") == "pending":
            raise ConflictError(code="rfq_locked_pending_approval")

        policy, settings, rules = self.load_policy(db, tenant_id=tenant_id)
        changes = normalize_changes(edit_input.changes)
        decisions = evaluate_changes(policy, changes, governed_values(rfq))

        if not bool(rfq.get("published")):
            updated = self._apply(db, rfqs, rfq, {decision.field_key: decision.proposed_value for decision in decisions})
            db.commit()
            return ServiceOutput(
                {
                    "message": success_message("changes_applied"),
                    "rfq": rfq_payload(updated),
                    "applied": [decision.field_key for decision in decisions],
                    "queued": [],
                    "modificationRequest": None,
                    "notifications": [],
                }
            )

        direct = [decision for decision in decisions if decision.outcome == EDIT_APPLY]
        queued = [decision for decision in decisions if decision.outcome == EDIT_QUEUE]

        updated = dict(rfq)
        if direct:
            updated = self._apply(db, rfqs, rfq, {decision.field_key: decision.proposed_value for decision in direct})

        modification: dict | None = None
        if queued:
            requests = ModificationRequestRepository(tenant_id=tenant_id)
            summary = {decision.field_key: decision.summary_entry() for decision in queued}
            modification_id = requests.create(
                db,
                rfq_id=int(rfq["id"]),
                requested_by=actor.email,
                summary=summary,
                note=(edit_input.note or "").strip() or None,
            )
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity="modification_request",
                entity_id=modification_id,
                from_status=None,
                to_status=MODIFICATION_PENDING,
                actor=actor.email,
            )
            modification = requests.get_by_id(db, modification_id)
        db.commit()

        if modification:
            self.event_bus.publish(
                ModificationRequested(
                    tenant_id=tenant_id,
                    rfq_id=int(rfq["id"]),
                    modification_id=int(modification["id"]),
                    fields=tuple(decision.field_key for decision in queued),
                )
            )
        current_app.logger.info(
            "rfq_modification_requested",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq["id"],
                "applied": [decision.field_key for decision in direct],
                "queued": [decision.field_key for decision in queued],
                "actor": actor.email,
            },
        )

        notifications: List[Dict[str, Any]] = []
        notify = [decision for decision in direct if decision.notify_suppliers]
        if notify:
            notifications = self._notify_change(
                db,
                tenant_id=tenant_id,
                rfq=updated,
                changes={decision.field_key: decision.summary_entry() for decision in notify},
                settings=settings,
                rules=rules,
            )

        return ServiceOutput(
            {
                "message": success_message("changes_queued" if queued else "changes_applied"),
                "rfq": rfq_payload(updated),
                "applied": [decision.field_key for decision in direct],
                "queued": [decision.field_key for decision in queued],
                "modificationRequest": modification_payload(modification) if modification else None,
                "notifications": notifications,
            },
            202 if queued else 200,
        )

    def list_requests(
        self,
        db,
        *,
        tenant_id: str,
        status: str | None = None,
        rfq_id: int | None = None,
    ) -> ServiceOutput:
        rows = ModificationRequestRepository(tenant_id=tenant_id).list_requests(db, status=status, rfq_id=rfq_id)
        return ServiceOutput({"items": [modification_payload(row) for row in rows]})

    def _ensure_may_decide(self, db, *, tenant_id: str, settings: Mapping[str, Any], actor: Actor) -> None:
        if actor.is_admin:
            return
        approver_ids = list(settings.get("approver_ids") or [])
        if not approver_ids:
            return
        approvers = ApproverRepository(tenant_id=tenant_id).get_many(db, approver_ids)
        if any(actor.matches(approver.get("email")) for approver in approvers.values()):
            return
        raise AppPermissionError(code="not_modification_approver")

    def decide(
        self,
        db,
        *,
        tenant_id: str,
        decision_input: ModificationDecisionInput,
        actor: Actor,
    ) -> ServiceOutput:
        action = normalize_action(decision_input.action)
        requests = ModificationRequestRepository(tenant_id=tenant_id)
        modification = requests.get_by_id(db, decision_input.modification_id)
        if not modification:
            raise NotFoundError(code="modification_not_found")

        policy, settings, rules = self.load_policy(db, tenant_id=tenant_id)
        self._ensure_may_decide(db, tenant_id=tenant_id, settings=settings, actor=actor)
        if modification["status"] != MODIFICATION_PENDING:
            raise ConflictError(code="modification_not_pending", payload={"status": modification["status"]})

        to_status = _DECISION_STATUS[action]
        note = (decision_input.note or "").strip() or None
        rfqs = RfqRepository(tenant_id=tenant_id)
        rfq_id = int(modification["rfq_id"])
        summary: Dict[str, Dict[str, Any]] = loads_json(modification.get("summary_json"), {})
        try:
            if not requests.transition(
                db,
                int(modification["id"]),
                to_status=to_status,
                processed_by=actor.email,
                decision_note=note,
            ):
                raise ConflictError(code="modification_not_pending")
            StatusEventRepository(tenant_id=tenant_id).add_event(
                db,
                entity="modification_request",
                entity_id=int(modification["id"]),
                from_status=MODIFICATION_PENDING,
                to_status=to_status,
                reason=note,
                actor=actor.email,
            )

            rfq = rfqs.get_by_id(db, rfq_id)
            if not rfq:
                raise NotFoundError(code="rfq_not_found")
            if to_status == MODIFICATION_APPROVED:
                rfq = self._apply(db, rfqs, rfq, {key: change.get("to") for key, change in summary.items()})
                if decision_input.publish_override is not None:
                    rfqs.set_published(db, rfq_id, bool(decision_input.publish_override))
                    rfq = rfqs.get_by_id(db, rfq_id) or rfq
        except AppError:
            db.rollback()
            raise
        db.commit()

        self.event_bus.publish(
            ModificationDecided(
                tenant_id=tenant_id,
                rfq_id=rfq_id,
                modification_id=int(modification["id"]),
                status=to_status,
                actor=actor.email,
            )
        )
        current_app.logger.info(
            "rfq_modification_decided",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq_id,
                "modification_id": modification["id"],
                "status": to_status,
                "actor": actor.email,
            },
        )

        notifications: List[Dict[str, Any]] = []
        if to_status == MODIFICATION_APPROVED and should_notify_on_approval(policy, summary.keys()):
            notifications = self._notify_change(
                db,
                tenant_id=tenant_id,
                rfq=rfq,
                changes=summary,
                settings=settings,
                rules=rules,
            )

        message_key = "modification_approved" if to_status == MODIFICATION_APPROVED else "modification_rejected"
        return ServiceOutput(
            {
                "message": success_message(message_key),
                "modificationRequest": modification_payload(requests.get_by_id(db, int(modification["id"])) or {}),
                "rfq": rfq_payload(rfq),
                "notifications": notifications,
            }
        )
