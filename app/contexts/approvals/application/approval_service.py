from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping

from flask import current_app

from app.contexts.approvals.application.rfq_views import governed_values, mail_view, resolve_recipients, rfq_payload
from app.contexts.approvals.domain.sla import is_overdue
from app.contexts.approvals.domain.workflow import (
    RESUBMITTABLE_RUN_STATUSES,
    RUN_APPROVED,
    RUN_PENDING,
    RUN_WITHDRAWN,
    STEP_PENDING,
    STEP_SKIPPED,
    DecisionPlan,
    StepState,
    active_step_ids,
    normalize_action,
    pending_step_ids,
    plan_decision,
    reconcile_plan,
    select_steps,
)
from app.contexts.approvals.infrastructure.repositories import (
    ApprovalRunRepository,
    RfqRepository,
    StatusEventRepository,
    SupplierRepository,
    WorkflowTemplateRepository,
)
from app.contexts.notifications.application.dispatcher import NotificationDispatcher
from app.contexts.notifications.infrastructure.tokens import PURPOSE_APPROVAL, InvalidTokenError, TokenService
from app.core import (
    ApprovalRunCompleted,
    ApprovalRunStarted,
    ApprovalStepDecided,
    EventBus,
    RfqPublished,
    get_event_bus,
)
from app.domain.contracts import Actor, ApprovalDecisionInput, ServiceOutput, TokenDecisionInput
from app.errors import AppError, ConflictError, NotFoundError, PermissionError as AppPermissionError, ValidationError
from app.infrastructure.repositories.base import parse_utc
from app.observability import observe_approval_decision, observe_approval_run_completed
from app.ui_strings import success_message


DispatcherFactory = Callable[[str], NotificationDispatcher]


def step_payload(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "runId": row["run_id"],
        "rfqId": row["rfq_id"],
        "order": row["step_order"],
        "role": row["role"],
        "approverId": row["approver_id"],
        "approverName": row["approver_name"],
        "approverEmail": row["approver_email"],
        "slaDuration": row["sla_duration"],
        "isRequired": bool(row["is_required"]),
        "status": row["status"],
        "comments": row.get("comments"),
        "decidedBy": row.get("decided_by"),
        "decidedAt": row.get("decided_at"),
        "createdAt": row.get("created_at"),
    }


def run_payload(run: Mapping[str, Any], steps: List[Mapping[str, Any]]) -> Dict[str, Any]:
    states = [StepState.from_row(row) for row in steps]
    active = active_step_ids(states, bool(run["allow_parallel"])) if run["status"] == RUN_PENDING else set()
    return {
        "id": run["id"],
        "rfqId": run["rfq_id"],
        "status": run["status"],
        "allowParallel": bool(run["allow_parallel"]),
        "templateVersion": run["template_version"],
        "submittedBy": run.get("submitted_by"),
        "createdAt": run.get("created_at"),
        "completedAt": run.get("completed_at"),
        "steps": [step_payload(row) for row in steps],
        "activeStepIds": sorted(active),
    }


def step_started_at(run: Mapping[str, Any], step: Mapping[str, Any], steps: Iterable[Mapping[str, Any]]) -> datetime:
    """A step's SLA clock starts when it became active."""
    started = parse_utc(run.get("created_at")) or datetime.now(timezone.utc)
    if bool(run["allow_parallel"]):
        return started
    for other in steps:
        if int(other["step_order"]) >= int(step["step_order"]):
            continue
        decided = parse_utc(other.get("decided_at"))
        if decided and decided > started:
            started = decided
    return started


def _iter_pending_runs(db, runs: ApprovalRunRepository, page_size: int) -> Iterator[Dict[str, Any]]:
    after_id = 0
    while True:
        page = runs.pending_runs(db, after_id=after_id, limit=page_size)
        if not page:
            return
        yield from page
        after_id = int(page[-1]["id"])


class ApprovalService:
    """Drives approval runs: instantiation, decisions, withdrawal and reminders."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        dispatcher_factory: DispatcherFactory | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.dispatcher_factory = dispatcher_factory or NotificationDispatcher.for_current_app

    def _publish(self, event) -> None:
        self.event_bus.publish(event)

    @staticmethod
    def _load_rfq(db, rfqs: RfqRepository, rfq_id: int) -> dict:
        rfq = rfqs.get_by_id(db, rfq_id)
        if not rfq:
            raise NotFoundError(code="rfq_not_found")
        return rfq

    def _notify_active_steps(
        self,
        db,
        *,
        tenant_id: str,
        rfq: Mapping[str, Any],
        steps: List[Mapping[str, Any]],
        step_ids: Iterable[int],
    ) -> List[Dict[str, Any]]:
        wanted = set(step_ids)
        if not wanted:
            return []
        dispatcher = self.dispatcher_factory(tenant_id)
        results = [
            dispatcher.notify_approver(db, step, mail_view(rfq)).to_payload()
            for step in steps
            if int(step["id"]) in wanted
        ]
        db.commit()
        return results

    def _publish_rfq(self, db, *, tenant_id: str, rfq_id: int) -> List[Dict[str, Any]]:
        rfq = RfqRepository(tenant_id=tenant_id).get_by_id(db, rfq_id) or {}
        recipients = resolve_recipients(db, SupplierRepository(tenant_id=tenant_id), rfq)
        results = self.dispatcher_factory(tenant_id).notify_rfq_published(db, mail_view(rfq), recipients)
        db.commit()
        self._publish(RfqPublished(tenant_id=tenant_id, rfq_id=rfq_id, supplier_count=len(recipients)))
        current_app.logger.info(
            "rfq_published",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq_id,
                "recipients": len(recipients),
                "sent": sum(1 for result in results if result.sent),
            },
        )
        return [result.to_payload() for result in results]

    def submit(self, db, *, tenant_id: str, rfq_id: int, actor: Actor) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)
        rfq = self._load_rfq(db, rfqs, rfq_id)

        latest = runs.latest_run_for_rfq(db, rfq_id)
        if latest and latest["status"] not in RESUBMITTABLE_RUN_STATUSES:
            raise ConflictError(
                code="run_already_active",
                payload={"run_id": latest["id"], "status": latest["status"]},
            )

        template = WorkflowTemplateRepository(tenant_id=tenant_id).load(db)
        selected = select_steps(template, governed_values(rfq))
        if not rfqs.mark_pending(db, rfq_id):
            raise ConflictError(code="run_already_active")

        run_status = RUN_PENDING if selected else RUN_APPROVED
        run_id = runs.create_run(
            db,
            rfq_id=rfq_id,
            status=run_status,
            allow_parallel=template.settings.allow_parallel,
            template_version=template.config_version,
            template_snapshot=template.to_payload(),
            submitted_by=actor.email,
        )
        for step in selected:
            runs.add_step(db, run_id=run_id, rfq_id=rfq_id, step=step)
        events.add_event(
            db,
            entity="rfq",
            entity_id=rfq_id,
            from_status=rfq.get("approval_status"),
            to_status="pending",
            reason="submitted",
            actor=actor.email,
        )

        if not selected:
            published = bool(rfq.get("publish_on_approval"))
            rfqs.finalize_approved(
                db,
                rfq_id,
                approved_by=actor.email,
                note=success_message("rfq_auto_approved"),
                published=published,
            )
            events.add_event(
                db,
                entity="rfq",
                entity_id=rfq_id,
                from_status="pending",
                to_status="approved",
                reason="auto_approved",
                actor=actor.email,
            )
            db.commit()
            observe_approval_run_completed(RUN_APPROVED)
            self._publish(
                ApprovalRunCompleted(tenant_id=tenant_id, rfq_id=rfq_id, run_id=run_id, status=RUN_APPROVED)
            )
            current_app.logger.info(
                "approval_run_auto_approved",
                extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "run_id": run_id, "published": published},
            )
            notifications = self._publish_rfq(db, tenant_id=tenant_id, rfq_id=rfq_id) if published else []
            return ServiceOutput(
                {
                    "message": success_message("rfq_auto_approved"),
                    "run": run_payload(runs.get_run(db, run_id) or {}, []),
                    "rfq": rfq_payload(rfqs.get_by_id(db, rfq_id) or {}),
                    "notifications": notifications,
                },
                201,
            )

        db.commit()
        self._publish(
            ApprovalRunStarted(
                tenant_id=tenant_id,
                rfq_id=rfq_id,
                run_id=run_id,
                step_count=len(selected),
                template_version=template.config_version,
            )
        )
        current_app.logger.info(
            "approval_run_started",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq_id,
                "run_id": run_id,
                "step_count": len(selected),
                "template_version": template.config_version,
            },
        )

        run = runs.get_run(db, run_id) or {}
        steps = runs.list_steps(db, run_id)
        payload = run_payload(run, steps)
        notifications = self._notify_active_steps(
            db,
            tenant_id=tenant_id,
            rfq=rfq,
            steps=steps,
            step_ids=payload["activeStepIds"],
        )
        return ServiceOutput(
            {
                "message": success_message("rfq_submitted"),
                "run": payload,
                "rfq": rfq_payload(rfqs.get_by_id(db, rfq_id) or {}),
                "notifications": notifications,
            },
            201,
        )

    def _record_decision(
        self,
        db,
        *,
        rfqs: RfqRepository,
        runs: ApprovalRunRepository,
        events: StatusEventRepository,
        step: Mapping[str, Any],
        action: str,
        decision_input: ApprovalDecisionInput,
        actor: Actor,
        allow_parallel: bool,
    ) -> tuple[DecisionPlan, bool]:
        """Apply one decision inside the run lock; returns the plan and whether the RFQ was published."""
        rfq_id = int(step["rfq_id"])
        run_id = int(step["run_id"])
        plan = plan_decision(
            [StepState.from_row(row) for row in runs.list_steps(db, run_id)],
            int(step["id"]),
            action,
            allow_parallel=allow_parallel,
        )

        comments = (decision_input.comments or "").strip() or None
        if not runs.transition_step(
            db,
            plan.step_id,
            to_status=plan.step_status,
            decided_by=actor.email,
            comments=comments,
        ):
            observe_approval_decision(action, "conflict")
            raise ConflictError(code="step_already_decided")
        events.add_event(
            db,
            entity="approval_step",
            entity_id=plan.step_id,
            from_status=STEP_PENDING,
            to_status=plan.step_status,
            reason=comments,
            actor=actor.email,
        )

        plan = reconcile_plan(plan, [StepState.from_row(row) for row in runs.list_steps(db, run_id)])
        if plan.completes_run and not runs.transition_run(
            db, run_id, from_status=RUN_PENDING, to_status=plan.run_status
        ):
            raise ConflictError(code="run_not_pending")
        if plan.skip_step_ids:
            runs.skip_steps(db, plan.skip_step_ids)
        if not plan.completes_run:
            return plan, False

        events.add_event(
            db,
            entity="approval_run",
            entity_id=run_id,
            from_status=RUN_PENDING,
            to_status=plan.run_status,
            actor=actor.email,
        )
        published = False
        if plan.run_status == RUN_APPROVED:
            rfq = self._load_rfq(db, rfqs, rfq_id)
            published = (
                bool(decision_input.publish_override)
                if decision_input.publish_override is not None
                else bool(rfq.get("publish_on_approval"))
            )
            rfqs.finalize_approved(db, rfq_id, approved_by=actor.email, note=comments, published=published)
        else:
            rfqs.finalize_rejected(db, rfq_id, rejected_by=actor.email, note=comments)
        events.add_event(
            db,
            entity="rfq",
            entity_id=rfq_id,
            from_status="pending",
            to_status=plan.run_status.lower(),
            reason=comments,
            actor=actor.email,
        )
        return plan, published

    def decide(
        self,
        db,
        *,
        tenant_id: str,
        decision_input: ApprovalDecisionInput,
        actor: Actor,
    ) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)

        step = runs.get_step(db, decision_input.step_id)
        if not step:
            raise NotFoundError(code="step_not_found")
        action = normalize_action(decision_input.action)
        if not actor.is_admin and not actor.matches(step.get("approver_email")):
            raise AppPermissionError(code="not_assigned_approver")

        if step["status"] != STEP_PENDING:
            raise ConflictError(code="step_already_decided", payload={"status": step["status"]})
        rfq_id = int(step["rfq_id"])
        run_id = int(step["run_id"])
        run = runs.get_run(db, run_id) or {}
        if run.get("status") != RUN_PENDING:
            raise ConflictError(code="run_not_pending", payload={"status": run.get("status")})

        try:
            if not runs.lock_pending_run(db, run_id):
                raise ConflictError(code="run_not_pending")
            plan, published = self._record_decision(
                db,
                rfqs=rfqs,
                runs=runs,
                events=events,
                step=step,
                action=action,
                decision_input=decision_input,
                actor=actor,
                allow_parallel=bool(run.get("allow_parallel")),
            )
        except AppError:
            db.rollback()
            raise
        db.commit()

        observe_approval_decision(action, plan.run_status.lower())
        self._publish(
            ApprovalStepDecided(
                tenant_id=tenant_id,
                rfq_id=rfq_id,
                run_id=run_id,
                step_id=plan.step_id,
                action=action,
                actor=actor.email,
            )
        )
        current_app.logger.info(
            "approval_step_decided",
            extra={
                "tenant_id": tenant_id,
                "rfq_id": rfq_id,
                "run_id": run_id,
                "step_id": plan.step_id,
                "action": action,
                "actor": actor.email,
                "run_status": plan.run_status,
                "admin_override": actor.is_admin and not actor.matches(step.get("approver_email")),
            },
        )

        notifications: List[Dict[str, Any]] = []
        if plan.completes_run:
            observe_approval_run_completed(plan.run_status)
            self._publish(
                ApprovalRunCompleted(tenant_id=tenant_id, rfq_id=rfq_id, run_id=run_id, status=plan.run_status)
            )
            if published:
                notifications = self._publish_rfq(db, tenant_id=tenant_id, rfq_id=rfq_id)
        elif plan.newly_active_ids:
            notifications = self._notify_active_steps(
                db,
                tenant_id=tenant_id,
                rfq=self._load_rfq(db, rfqs, rfq_id),
                steps=runs.list_steps(db, run_id),
                step_ids=plan.newly_active_ids,
            )

        message_key = "step_approved" if action == "approve" else "step_rejected"
        return ServiceOutput(
            {
                "message": success_message(message_key),
                "step": step_payload(runs.get_step(db, plan.step_id) or {}),
                "run": run_payload(runs.get_run(db, run_id) or {}, runs.list_steps(db, run_id)),
                "rfq": rfq_payload(rfqs.get_by_id(db, rfq_id) or {}),
                "notifications": notifications,
            }
        )

    def decide_by_token(self, db, *, decision_input: TokenDecisionInput) -> ServiceOutput:
        tokens = TokenService.from_config(current_app.config)
        try:
            claims = tokens.verify(decision_input.token, purpose=PURPOSE_APPROVAL)
        except InvalidTokenError as exc:
            raise ValidationError(code="invalid_token", details=str(exc)) from exc

        tenant_id = str(claims.get("tenant_id") or "").strip()
        step_id = claims.get("stepId")
        approver_email = str(claims.get("approverEmail") or "").strip()
        if not tenant_id or not step_id or not approver_email:
            raise ValidationError(code="invalid_token", details="token is missing claims")

        step = ApprovalRunRepository(tenant_id=tenant_id).get_step(db, int(step_id))
        if step and int(step["rfq_id"]) != int(claims.get("rfqId") or 0):
            raise ValidationError(code="invalid_token", details="token does not match the step")

        return self.decide(
            db,
            tenant_id=tenant_id,
            decision_input=ApprovalDecisionInput(
                step_id=int(step_id),
                action=decision_input.action,
                comments=decision_input.comments,
            ),
            actor=Actor(email=approver_email, role="approver"),
        )

    def withdraw(self, db, *, tenant_id: str, rfq_id: int, actor: Actor) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)
        self._load_rfq(db, rfqs, rfq_id)

        run = runs.latest_run_for_rfq(db, rfq_id)
        if not run or run["status"] != RUN_PENDING:
            raise ConflictError(code="no_active_run")
        run_id = int(run["id"])
        if not runs.transition_run(db, run_id, from_status=RUN_PENDING, to_status=RUN_WITHDRAWN):
            raise ConflictError(code="no_active_run")

        steps = runs.list_steps(db, run_id)
        runs.skip_steps(db, pending_step_ids([StepState.from_row(row) for row in steps]))
        rfqs.reset_approval(db, rfq_id)
        events.add_event(
            db,
            entity="approval_run",
            entity_id=run_id,
            from_status=RUN_PENDING,
            to_status=RUN_WITHDRAWN,
            actor=actor.email,
        )
        events.add_event(
            db,
            entity="rfq",
            entity_id=rfq_id,
            from_status="pending",
            to_status="none",
            reason="withdrawn",
            actor=actor.email,
        )
        db.commit()

        observe_approval_run_completed(RUN_WITHDRAWN)
        self._publish(ApprovalRunCompleted(tenant_id=tenant_id, rfq_id=rfq_id, run_id=run_id, status=RUN_WITHDRAWN))
        current_app.logger.info(
            "approval_run_withdrawn",
            extra={"tenant_id": tenant_id, "rfq_id": rfq_id, "run_id": run_id, "actor": actor.email},
        )
        return ServiceOutput(
            {
                "message": success_message("run_withdrawn"),
                "run": run_payload(runs.get_run(db, run_id) or {}, runs.list_steps(db, run_id)),
                "rfq": rfq_payload(rfqs.get_by_id(db, rfq_id) or {}),
            }
        )

    def get_run(self, db, *, tenant_id: str, rfq_id: int) -> ServiceOutput:
        rfqs = RfqRepository(tenant_id=tenant_id)
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        rfq = self._load_rfq(db, rfqs, rfq_id)
        run = runs.latest_run_for_rfq(db, rfq_id)
        if not run:
            raise NotFoundError(code="run_not_found")
        return ServiceOutput(
            {
                "rfq": rfq_payload(rfq),
                "run": run_payload(run, runs.list_steps(db, int(run["id"]))),
                "history": StatusEventRepository(tenant_id=tenant_id).list_for_entity(
                    db, entity="rfq", entity_id=rfq_id
                ),
            }
        )

    def pending_for_approver(self, db, *, tenant_id: str, actor: Actor) -> ServiceOutput:
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        active_by_run: Dict[int, set[int]] = {}
        items: List[Dict[str, Any]] = []
        for row in runs.pending_steps_for_approver(db, actor.email):
            run_id = int(row["run_id"])
            if run_id not in active_by_run:
                states = [StepState.from_row(step) for step in runs.list_steps(db, run_id)]
                active_by_run[run_id] = active_step_ids(states, bool(row["allow_parallel"]))
            if int(row["id"]) not in active_by_run[run_id]:
                continue
            items.append(
                {
                    "stepId": row["id"],
                    "runId": run_id,
                    "rfqId": row["rfq_id"],
                    "rfqTitle": row["title"],
                    "order": row["step_order"],
                    "role": row["role"],
                    "slaDuration": row["sla_duration"],
                    "isRequired": bool(row["is_required"]),
                    "createdAt": row["created_at"],
                }
            )
        return ServiceOutput({"items": items, "total": len(items)})

    def send_due_reminders(
        self, db, *, tenant_id: str, now: datetime | None = None, page_size: int = 200
    ) -> int:
        """Email approvers whose active step is past its SLA; each step is reminded at most once."""
        if not WorkflowTemplateRepository(tenant_id=tenant_id).send_reminders_enabled(db):
            return 0
        now = now or datetime.now(timezone.utc)
        rfqs = RfqRepository(tenant_id=tenant_id)
        runs = ApprovalRunRepository(tenant_id=tenant_id)
        dispatcher: NotificationDispatcher | None = None
        reminded = 0

        for run in _iter_pending_runs(db, runs, page_size):
            steps = runs.list_steps(db, int(run["id"]))
            active = active_step_ids([StepState.from_row(row) for row in steps], bool(run["allow_parallel"]))
            for step in steps:
                if int(step["id"]) not in active or step.get("reminded_at") or step["status"] == STEP_SKIPPED:
                    continue
                if not is_overdue(step.get("sla_duration"), step_started_at(run, step, steps), now):
                    continue
                if not runs.mark_reminded(db, int(step["id"])):
                    continue
                db.commit()
                rfq = rfqs.get_by_id(db, int(run["rfq_id"])) or {"id": run["rfq_id"]}
                dispatcher = dispatcher or self.dispatcher_factory(tenant_id)
                dispatcher.notify_sla_reminder(db, step, mail_view(rfq))
                db.commit()
                reminded += 1
                current_app.logger.info(
                    "approval_sla_reminder_sent",
                    extra={"tenant_id": tenant_id, "run_id": run["id"], "step_id": step["id"]},
                )
        return reminded
