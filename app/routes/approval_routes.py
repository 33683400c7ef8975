from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from app.contexts.approvals.application.approval_service import ApprovalService
from app.contexts.approvals.application.approver_service import ApproverService
from app.contexts.approvals.application.modification_service import ModificationService
from app.contexts.approvals.application.pause_service import PauseService
from app.contexts.approvals.application.rfq_service import RfqService
from app.contexts.approvals.application.template_service import WorkflowTemplateService
from app.db import get_db, get_read_db
from app.domain.contracts import (
    ApprovalDecisionInput,
    ApproverInput,
    ModificationDecisionInput,
    ModificationRulesInput,
    PauseDecisionInput,
    RfqCreateInput,
    RfqEditInput,
    RfqPauseInput,
    SupplierCreateInput,
    TemplateSaveInput,
    TokenDecisionInput,
    json_flag,
)
from app.errors import NotFoundError, ValidationError
from app.policies import current_actor, require_roles
from app.tenant import DEFAULT_TENANT_ID, current_tenant_id
from app.ui_strings import STATUS_GROUPS, status_items_for_group


approval_bp = Blueprint("approvals", __name__)

ADMIN_ROLES = ("admin",)
BUYER_ROLES = ("buyer", "admin")

_APPROVAL_SERVICE = ApprovalService()
_APPROVER_SERVICE = ApproverService()
_MODIFICATION_SERVICE = ModificationService()
_PAUSE_SERVICE = PauseService()
_RFQ_SERVICE = RfqService()
_TEMPLATE_SERVICE = WorkflowTemplateService()


def _tenant_id() -> str:
    return current_tenant_id() or DEFAULT_TENANT_ID


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(code="validation_error", details="request body must be a JSON object")
    return payload


def _optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="validation_error", details=f"{field} must be an integer") from exc


def _respond(result):
    return jsonify(result.payload), result.status_code


@approval_bp.route("/api/statuses/<group>", methods=["GET"])
def statuses(group: str):
    if group not in STATUS_GROUPS:
        raise NotFoundError(code="not_found")
    return jsonify({"group": group, "items": status_items_for_group(group)})


# Approver registry


@approval_bp.route("/api/approvers", methods=["GET"])
def list_approvers():
    current_actor()
    return _respond(_APPROVER_SERVICE.list_approvers(get_read_db(), tenant_id=_tenant_id()))


@approval_bp.route("/api/approvers", methods=["POST"])
def create_approver():
    require_roles(*ADMIN_ROLES)
    payload = _json_body()
    db = get_db()
    result = _APPROVER_SERVICE.create_approver(
        db,
        tenant_id=_tenant_id(),
        approver_input=ApproverInput(
            name=str(payload.get("name") or ""),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
        ),
    )
    db.commit()
    return _respond(result)


@approval_bp.route("/api/approvers/<int:approver_id>", methods=["GET"])
def get_approver(approver_id: int):
    current_actor()
    return _respond(_APPROVER_SERVICE.get_approver(get_read_db(), tenant_id=_tenant_id(), approver_id=approver_id))


@approval_bp.route("/api/approvers/<int:approver_id>", methods=["PATCH"])
def update_approver(approver_id: int):
    require_roles(*ADMIN_ROLES)
    payload = _json_body()
    db = get_db()
    result = _APPROVER_SERVICE.update_approver(
        db,
        tenant_id=_tenant_id(),
        approver_id=approver_id,
        approver_input=ApproverInput(
            name=str(payload.get("name") or ""),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
        ),
    )
    db.commit()
    return _respond(result)


@approval_bp.route("/api/approvers/<int:approver_id>", methods=["DELETE"])
def delete_approver(approver_id: int):
    require_roles(*ADMIN_ROLES)
    db = get_db()
    result = _APPROVER_SERVICE.delete_approver(db, tenant_id=_tenant_id(), approver_id=approver_id)
    db.commit()
    return _respond(result)


# Workflow template


@approval_bp.route("/api/workflow-template", methods=["GET"])
def load_workflow_template():
    current_actor()
    return _respond(_TEMPLATE_SERVICE.load_template(get_read_db(), tenant_id=_tenant_id()))


@approval_bp.route("/api/workflow-template", methods=["PUT"])
def save_workflow_template():
    actor = require_roles(*ADMIN_ROLES)
    payload = _json_body()
    settings = payload.get("settings") if isinstance(payload.get("settings"), dict) else payload
    db = get_db()
    result = _TEMPLATE_SERVICE.save_template(
        db,
        tenant_id=_tenant_id(),
        save_input=TemplateSaveInput(
            steps=payload.get("steps") if payload.get("steps") is not None else [],
            default_sla=settings.get("defaultSla"),
            allow_parallel=json_flag(settings.get("allowParallel"), name="allowParallel", default=False),
            send_reminders=json_flag(settings.get("sendReminders"), name="sendReminders", default=True),
            expected_version=_optional_int(payload.get("expectedVersion"), "expectedVersion"),
        ),
        actor=actor,
    )
    db.commit()
    return _respond(result)


# Suppliers


@approval_bp.route("/api/suppliers", methods=["GET"])
def list_suppliers():
    current_actor()
    return _respond(_RFQ_SERVICE.list_suppliers(get_read_db(), tenant_id=_tenant_id()))


@approval_bp.route("/api/suppliers", methods=["POST"])
def create_supplier():
    require_roles(*BUYER_ROLES)
    payload = _json_body()
    result = _RFQ_SERVICE.create_supplier(
        get_db(),
        tenant_id=_tenant_id(),
        create_input=SupplierCreateInput(
            name=str(payload.get("name") or payload.get("companyName") or ""),
            email=payload.get("email"),
        ),
    )
    return _respond(result)


@approval_bp.route("/api/supplier/quote-access", methods=["GET"])
def supplier_quote_access():
    token = (request.args.get("token") or "").strip()
    if not token:
        raise ValidationError(code="invalid_token", details="token is required")
    return _respond(_RFQ_SERVICE.quote_access(get_read_db(), token=token))


# RFQs


@approval_bp.route("/api/rfqs", methods=["GET"])
def list_rfqs():
    current_actor()
    approval_status = (request.args.get("approvalStatus") or "").strip() or None
    return _respond(_RFQ_SERVICE.list_rfqs(get_read_db(), tenant_id=_tenant_id(), approval_status=approval_status))


@approval_bp.route("/api/rfqs", methods=["POST"])
def create_rfq():
    actor = require_roles(*BUYER_ROLES)
    payload = _json_body()
    publish_on_approval = json_flag(payload.get("publishOnApproval"), name="publishOnApproval")
    result = _RFQ_SERVICE.create_rfq(
        get_db(),
        tenant_id=_tenant_id(),
        create_input=RfqCreateInput(
            title=str(payload.get("title") or ""),
            fields=payload.get("fields") if payload.get("fields") is not None else {},
            suppliers=payload.get("suppliersSelected") or [],
            publish_on_approval=True if publish_on_approval is None else publish_on_approval,
        ),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/rfqs/<int:rfq_id>", methods=["GET"])
def get_rfq(rfq_id: int):
    current_actor()
    return _respond(_RFQ_SERVICE.get_rfq(get_read_db(), tenant_id=_tenant_id(), rfq_id=rfq_id))


@approval_bp.route("/api/rfqs/<int:rfq_id>", methods=["PATCH"])
def edit_rfq(rfq_id: int):
    actor = require_roles(*BUYER_ROLES)
    payload = _json_body()
    changes = payload.get("changes") if isinstance(payload.get("changes"), dict) else {
        key: value for key, value in payload.items() if key != "note"
    }
    result = _MODIFICATION_SERVICE.request_changes(
        get_db(),
        tenant_id=_tenant_id(),
        edit_input=RfqEditInput(rfq_id=rfq_id, changes=changes, note=payload.get("note")),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/rfqs/<int:rfq_id>/submit", methods=["POST"])
def submit_rfq(rfq_id: int):
    actor = require_roles(*BUYER_ROLES)
    return _respond(_APPROVAL_SERVICE.submit(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id, actor=actor))


@approval_bp.route("/api/rfqs/<int:rfq_id>/withdraw", methods=["POST"])
def withdraw_rfq(rfq_id: int):
    actor = require_roles(*BUYER_ROLES)
    return _respond(_APPROVAL_SERVICE.withdraw(get_db(), tenant_id=_tenant_id(), rfq_id=rfq_id, actor=actor))


@approval_bp.route("/api/rfqs/<int:rfq_id>/approval", methods=["GET"])
def get_rfq_approval(rfq_id: int):
    current_actor()
    return _respond(_APPROVAL_SERVICE.get_run(get_read_db(), tenant_id=_tenant_id(), rfq_id=rfq_id))


# Approval decisions


@approval_bp.route("/api/approval/<int:step_id>/decide", methods=["POST"])
def decide_step(step_id: int):
    actor = current_actor()
    payload = _json_body()
    result = _APPROVAL_SERVICE.decide(
        get_db(),
        tenant_id=_tenant_id(),
        decision_input=ApprovalDecisionInput(
            step_id=step_id,
            action=str(payload.get("action") or ""),
            comments=payload.get("comments"),
            publish_override=json_flag(payload.get("publish"), name="publish"),
        ),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/approval/verify", methods=["POST"])
def decide_by_token():
    payload = _json_body()
    token = str(payload.get("token") or request.args.get("token") or "").strip()
    if not token:
        raise ValidationError(code="invalid_token", details="token is required")
    result = _APPROVAL_SERVICE.decide_by_token(
        get_db(),
        decision_input=TokenDecisionInput(
            token=token,
            action=str(payload.get("action") or ""),
            comments=payload.get("comments"),
        ),
    )
    return _respond(result)


@approval_bp.route("/api/approval/inbox", methods=["GET"])
def approval_inbox():
    actor = current_actor()
    return _respond(_APPROVAL_SERVICE.pending_for_approver(get_read_db(), tenant_id=_tenant_id(), actor=actor))


# Modification rules and requests


@approval_bp.route("/api/modification-rules", methods=["GET"])
def get_modification_rules():
    current_actor()
    return _respond(_MODIFICATION_SERVICE.get_rules(get_db(), tenant_id=_tenant_id()))


@approval_bp.route("/api/modification-rules", methods=["PUT"])
def save_modification_rules():
    actor = require_roles(*ADMIN_ROLES)
    payload = _json_body()
    result = _MODIFICATION_SERVICE.save_rules(
        get_db(),
        tenant_id=_tenant_id(),
        rules_input=ModificationRulesInput(
            fields=payload.get("fields") if payload.get("fields") is not None else [],
            approver_ids=payload.get("approvers") or [],
            notify_all_suppliers=json_flag(
                payload.get("notifyAllSuppliersOnAnyChange"), name="notifyAllSuppliersOnAnyChange", default=False
            ),
            subject=payload.get("supplierNotificationSubject"),
            body=payload.get("supplierNotificationBody"),
        ),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/modification-requests", methods=["GET"])
def list_modification_requests():
    current_actor()
    return _respond(
        _MODIFICATION_SERVICE.list_requests(
            get_read_db(),
            tenant_id=_tenant_id(),
            status=(request.args.get("status") or "").strip() or None,
            rfq_id=_optional_int(request.args.get("rfqId"), "rfqId"),
        )
    )


@approval_bp.route("/api/modification-requests/<int:modification_id>/decide", methods=["POST"])
def decide_modification(modification_id: int):
    actor = current_actor()
    payload = _json_body()
    result = _MODIFICATION_SERVICE.decide(
        get_db(),
        tenant_id=_tenant_id(),
        decision_input=ModificationDecisionInput(
            modification_id=modification_id,
            action=str(payload.get("action") or ""),
            note=payload.get("note"),
            publish_override=json_flag(payload.get("publish"), name="publish"),
        ),
        actor=actor,
    )
    return _respond(result)


# Pause and resume


@approval_bp.route("/api/rfqs/<int:rfq_id>/pause", methods=["POST"])
def pause_rfq(rfq_id: int):
    actor = require_roles(*BUYER_ROLES)
    payload = _json_body()
    reason = payload.get("reason")
    result = _PAUSE_SERVICE.pause(
        get_db(),
        tenant_id=_tenant_id(),
        pause_input=RfqPauseInput(
            rfq_id=rfq_id,
            reason=str(reason) if reason is not None else None,
            notify_suppliers=json_flag(payload.get("notifySuppliers"), name="notifySuppliers", default=True),
        ),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/rfqs/<int:rfq_id>/resume", methods=["POST"])
def resume_rfq(rfq_id: int):
    actor = require_roles(*BUYER_ROLES)
    payload = _json_body()
    result = _PAUSE_SERVICE.resume(
        get_db(),
        tenant_id=_tenant_id(),
        rfq_id=rfq_id,
        notify_suppliers=json_flag(payload.get("notifySuppliers"), name="notifySuppliers", default=True),
        actor=actor,
    )
    return _respond(result)


@approval_bp.route("/api/pause-requests", methods=["GET"])
def list_pause_requests():
    current_actor()
    return _respond(
        _PAUSE_SERVICE.list_requests(
            get_read_db(),
            tenant_id=_tenant_id(),
            status=(request.args.get("status") or "").strip() or None,
            rfq_id=_optional_int(request.args.get("rfqId"), "rfqId"),
        )
    )


@approval_bp.route("/api/pause-requests/<int:request_id>/decide", methods=["POST"])
def decide_pause_request(request_id: int):
    actor = require_roles(*ADMIN_ROLES)
    payload = _json_body()
    result = _PAUSE_SERVICE.decide(
        get_db(),
        tenant_id=_tenant_id(),
        decision_input=PauseDecisionInput(
            request_id=request_id,
            action=str(payload.get("action") or ""),
            note=payload.get("note"),
        ),
        actor=actor,
    )
    return _respond(result)
