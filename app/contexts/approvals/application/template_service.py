from __future__ import annotations

from typing import Any, Dict, List, Mapping

from flask import current_app

from app.contexts.approvals.domain.workflow import (
    DEFAULT_SLA,
    StepDefinition,
    WorkflowSettings,
    renumber_steps,
)
from app.contexts.approvals.infrastructure.repositories import ApproverRepository, WorkflowTemplateRepository
from app.domain.contracts import Actor, ServiceOutput, TemplateSaveInput, json_flag
from app.errors import ConflictError, ValidationError


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _as_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class WorkflowTemplateService:
    def load_template(self, db, *, tenant_id: str) -> ServiceOutput:
        template = WorkflowTemplateRepository(tenant_id=tenant_id).load(db)
        return ServiceOutput(template.to_payload())

    def _resolve_step(
        self,
        raw: Mapping[str, Any],
        *,
        approvers: ApproverRepository,
        db,
        known: Dict[int, dict],
        default_sla: str,
        position: int,
    ) -> StepDefinition:
        if not isinstance(raw, Mapping):
            raise ValidationError(code="validation_error", details=f"step {position} must be an object")

        approver_id = _as_int(raw.get("approverId"))
        approver_name = _text(raw.get("approverName"))
        role = _text(raw.get("role"))
        approver: dict | None
        if approver_id is not None:
            approver = known.get(approver_id)
        else:
            approver = approvers.find_by_name_or_role(db, name=approver_name or None, role=role or None)
        if not approver:
            raise ValidationError(
                code="invalid_approver_reference",
                payload={"step": position, "approverId": approver_id, "approverName": approver_name or None},
            )

        is_required = json_flag(raw.get("isRequired"), name=f"steps[{position}].isRequired", default=True)
        return StepDefinition(
            order=position,
            role=role or approver["role"],
            approver_id=int(approver["id"]),
            approver_name=approver["name"],
            approver_email=approver["email"],
            sla_duration=_text(raw.get("slaDuration")) or default_sla,
            condition=_text(raw.get("condition")),
            condition_type=_text(raw.get("conditionType")),
            condition_operator=_text(raw.get("conditionOperator")),
            condition_value=_text(raw.get("conditionValue")),
            is_required=bool(is_required),
        )

    def save_template(self, db, *, tenant_id: str, save_input: TemplateSaveInput, actor: Actor) -> ServiceOutput:
        if not isinstance(save_input.steps, list):
            raise ValidationError(code="validation_error", details="steps must be a list")

        settings = WorkflowSettings(
            default_sla=_text(save_input.default_sla) or DEFAULT_SLA,
            allow_parallel=bool(save_input.allow_parallel),
            send_reminders=bool(save_input.send_reminders),
        )
        approvers = ApproverRepository(tenant_id=tenant_id)
        referenced = [
            _as_int(raw.get("approverId")) for raw in save_input.steps if isinstance(raw, Mapping)
        ]
        known = approvers.get_many(db, [value for value in referenced if value is not None])

        steps: List[StepDefinition] = [
            self._resolve_step(
                raw,
                approvers=approvers,
                db=db,
                known=known,
                default_sla=settings.default_sla,
                position=position,
            )
            for position, raw in enumerate(save_input.steps, start=1)
        ]

        repository = WorkflowTemplateRepository(tenant_id=tenant_id)
        version = repository.replace(
            db,
            steps=renumber_steps(steps),
            settings=settings,
            updated_by=actor.email,
            expected_version=save_input.expected_version,
        )
        if version is None:
            raise ConflictError(
                code="template_version_conflict",
                payload={"expectedVersion": save_input.expected_version},
            )

        current_app.logger.info(
            "workflow_template_saved",
            extra={"tenant_id": tenant_id, "config_version": version, "step_count": len(steps), "actor": actor.email},
        )
        return ServiceOutput(repository.load(db).to_payload())
