from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from app.contexts.approvals.domain.conditions import evaluate_condition, parse_condition
from app.errors import ConflictError, NotFoundError, ValidationError


STEP_PENDING = "PENDING"
STEP_APPROVED = "APPROVED"
STEP_REJECTED = "REJECTED"
STEP_SKIPPED = "SKIPPED"

RUN_PENDING = "PENDING"
RUN_APPROVED = "APPROVED"
RUN_REJECTED = "REJECTED"
RUN_WITHDRAWN = "WITHDRAWN"

# A new run may only be started when the previous one ended in one of these.
RESUBMITTABLE_RUN_STATUSES = frozenset({RUN_REJECTED, RUN_WITHDRAWN})

DECISION_ACTIONS = {"approve": STEP_APPROVED, "reject": STEP_REJECTED}

DEFAULT_SLA = "2 business days"
DEFAULT_STEP_SLA = "48 hrs"


@dataclass(frozen=True)
class StepDefinition:
    order: int
    role: str
    approver_id: int
    approver_name: str = ""
    approver_email: str = ""
    sla_duration: str = DEFAULT_STEP_SLA
    condition: str = ""
    condition_type: str = ""
    condition_operator: str = ""
    condition_value: str = ""
    is_required: bool = True

    def predicate(self):
        return parse_condition(
            self.condition,
            condition_type=self.condition_type,
            condition_operator=self.condition_operator,
            condition_value=self.condition_value,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "role": self.role,
            "approverId": self.approver_id,
            "approverName": self.approver_name,
            "slaDuration": self.sla_duration,
            "condition": self.condition,
            "conditionType": self.condition_type,
            "conditionOperator": self.condition_operator,
            "conditionValue": self.condition_value,
            "isRequired": self.is_required,
        }


@dataclass(frozen=True)
class WorkflowSettings:
    default_sla: str = DEFAULT_SLA
    allow_parallel: bool = False
    send_reminders: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "defaultSla": self.default_sla,
            "allowParallel": self.allow_parallel,
            "sendReminders": self.send_reminders,
        }


@dataclass(frozen=True)
class WorkflowTemplate:
    steps: tuple[StepDefinition, ...] = ()
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    config_version: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "steps": [step.to_payload() for step in self.steps],
            "settings": self.settings.to_payload(),
            "configVersion": self.config_version,
        }


@dataclass(frozen=True)
class StepState:
    id: int
    order: int
    is_required: bool
    status: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StepState":
        return cls(
            id=int(row["id"]),
            order=int(row["step_order"]),
            is_required=bool(row["is_required"]),
            status=str(row["status"]),
        )


@dataclass(frozen=True)
class DecisionPlan:
    step_id: int
    step_status: str
    run_status: str
    skip_step_ids: tuple[int, ...] = ()
    newly_active_ids: tuple[int, ...] = ()

    @property
    def completes_run(self) -> bool:
        return self.run_status != RUN_PENDING


def renumber_steps(steps: Iterable[StepDefinition]) -> List[StepDefinition]:
    return [replace(step, order=index) for index, step in enumerate(steps, start=1)]


def select_steps(template: WorkflowTemplate, request: Mapping[str, Any]) -> List[StepDefinition]:
    qualifying = [step for step in template.steps if evaluate_condition(step.predicate(), request)]
    return sorted(qualifying, key=lambda step: step.order)


def active_step_ids(steps: Sequence[StepState], allow_parallel: bool) -> set[int]:
    pending = [step for step in steps if step.status == STEP_PENDING]
    if not pending:
        return set()
    if allow_parallel:
        return {step.id for step in pending}
    lowest = min(step.order for step in pending)
    return {step.id for step in pending if step.order == lowest}


def normalize_action(action: str | None) -> str:
    normalized = str(action or "").strip().lower()
    if normalized not in DECISION_ACTIONS:
        raise ValidationError(code="invalid_action", details=f"unsupported action: {action!r}")
    return normalized


def run_outcome(steps: Sequence[StepState]) -> str:
    required = [step for step in steps if step.is_required]
    if any(step.status == STEP_REJECTED for step in required):
        return RUN_REJECTED
    if any(step.status == STEP_PENDING for step in required):
        return RUN_PENDING
    if not required and any(step.status == STEP_PENDING for step in steps):
        return RUN_PENDING
    return RUN_APPROVED


def plan_decision(
    steps: Sequence[StepState],
    step_id: int,
    action: str,
    *,
    allow_parallel: bool,
) -> DecisionPlan:
    """Work out every transition caused by one approver decision.

    Nothing is written here; the service applies the plan with compare-and-swap
    updates so a concurrent decision on the same step loses cleanly.
    """
    normalized_action = normalize_action(action)
    target = next((step for step in steps if step.id == step_id), None)
    if target is None:
        raise NotFoundError(code="step_not_found")
    if target.status != STEP_PENDING:
        raise ConflictError(code="step_already_decided", payload={"status": target.status})

    active_before = active_step_ids(steps, allow_parallel)
    if step_id not in active_before:
        raise ConflictError(code="step_not_active")

    new_status = DECISION_ACTIONS[normalized_action]
    after = [replace(step, status=new_status) if step.id == step_id else step for step in steps]
    run_status = run_outcome(after)

    if run_status != RUN_PENDING:
        skipped = tuple(step.id for step in after if step.status == STEP_PENDING)
        return DecisionPlan(
            step_id=step_id,
            step_status=new_status,
            run_status=run_status,
            skip_step_ids=skipped,
        )

    newly_active = active_step_ids(after, allow_parallel) - (active_before - {step_id})
    return DecisionPlan(
        step_id=step_id,
        step_status=new_status,
        run_status=RUN_PENDING,
        newly_active_ids=tuple(sorted(newly_active)),
    )


def pending_step_ids(steps: Sequence[StepState]) -> tuple[int, ...]:
    return tuple(step.id for step in steps if step.status == STEP_PENDING)


def reconcile_plan(plan: DecisionPlan, persisted: Sequence[StepState]) -> DecisionPlan:
    """Re-derive the run outcome from the stored steps after the step write landed.

    A sibling decision committed between our read and our write can leave the
    run complete even though `plan` was built while that sibling was PENDING.
    """
    if plan.completes_run:
        return plan
    outcome = run_outcome(persisted)
    if outcome == RUN_PENDING:
        return plan
    return replace(plan, run_status=outcome, skip_step_ids=pending_step_ids(persisted), newly_active_ids=())
