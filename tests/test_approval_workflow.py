import unittest

from app.contexts.approvals.domain.workflow import (
    RUN_APPROVED,
    RUN_PENDING,
    RUN_REJECTED,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
    StepDefinition,
    StepState,
    WorkflowTemplate,
    active_step_ids,
    normalize_action,
    plan_decision,
    renumber_steps,
    select_steps,
)
from app.errors import ConflictError, NotFoundError, ValidationError


def _definition(order: int, role: str, condition: str = "", is_required: bool = True) -> StepDefinition:
    return StepDefinition(order=order, role=role, approver_id=order, condition=condition, is_required=is_required)


def _states(*specs) -> list:
    return [
        StepState(id=step_id, order=order, is_required=required, status=status)
        for step_id, order, required, status in specs
    ]


class SelectStepsTest(unittest.TestCase):
    def test_budget_condition_filters_steps(self) -> None:
        template = WorkflowTemplate(
            steps=(
                _definition(1, "Manager", "Always required"),
                _definition(2, "Finance", "Budget > 50000"),
                _definition(3, "Director", "Budget > 250000"),
            )
        )

        selected = select_steps(template, {"budget": 75000})

        self.assertEqual([step.role for step in selected], ["Manager", "Finance"])

    def test_selected_steps_keep_template_order(self) -> None:
        template = WorkflowTemplate(steps=(_definition(3, "C"), _definition(1, "A"), _definition(2, "B")))
        self.assertEqual([step.order for step in select_steps(template, {})], [1, 2, 3])

    def test_renumber_steps_is_contiguous(self) -> None:
        renumbered = renumber_steps([_definition(7, "A"), _definition(2, "B")])
        self.assertEqual([(step.order, step.role) for step in renumbered], [(1, "A"), (2, "B")])


class ActiveStepsTest(unittest.TestCase):
    def test_sequential_mode_activates_lowest_pending_order(self) -> None:
        steps = _states((10, 1, True, STEP_APPROVED), (11, 2, True, STEP_PENDING), (12, 3, True, STEP_PENDING))
        self.assertEqual(active_step_ids(steps, allow_parallel=False), {11})

    def test_parallel_mode_activates_every_pending_step(self) -> None:
        steps = _states((10, 1, True, STEP_PENDING), (11, 2, True, STEP_PENDING))
        self.assertEqual(active_step_ids(steps, allow_parallel=True), {10, 11})

    def test_no_pending_steps(self) -> None:
        self.assertEqual(active_step_ids(_states((10, 1, True, STEP_APPROVED)), allow_parallel=False), set())


class PlanDecisionTest(unittest.TestCase):
    def test_approving_middle_step_activates_next(self) -> None:
        steps = _states((1, 1, True, STEP_PENDING), (2, 2, True, STEP_PENDING))

        plan = plan_decision(steps, 1, "approve", allow_parallel=False)

        self.assertEqual(plan.step_status, STEP_APPROVED)
        self.assertEqual(plan.run_status, RUN_PENDING)
        self.assertFalse(plan.completes_run)
        self.assertEqual(plan.newly_active_ids, (2,))

    def test_last_required_approval_completes_run_and_skips_optional(self) -> None:
        steps = _states((1, 1, True, STEP_APPROVED), (2, 2, True, STEP_PENDING), (3, 3, False, STEP_PENDING))

        plan = plan_decision(steps, 2, "APPROVE", allow_parallel=False)

        self.assertEqual(plan.run_status, RUN_APPROVED)
        self.assertEqual(plan.skip_step_ids, (3,))

    def test_required_rejection_halts_the_run(self) -> None:
        steps = _states((1, 1, True, STEP_PENDING), (2, 2, True, STEP_PENDING), (3, 3, True, STEP_PENDING))

        plan = plan_decision(steps, 1, "reject", allow_parallel=False)

        self.assertEqual(plan.step_status, STEP_REJECTED)
        self.assertEqual(plan.run_status, RUN_REJECTED)
        self.assertEqual(plan.skip_step_ids, (2, 3))

    def test_optional_rejection_does_not_halt(self) -> None:
        steps = _states((1, 1, False, STEP_PENDING), (2, 2, True, STEP_PENDING))

        plan = plan_decision(steps, 1, "reject", allow_parallel=False)

        self.assertEqual(plan.run_status, RUN_PENDING)
        self.assertEqual(plan.newly_active_ids, (2,))

    def test_sequential_mode_refuses_inactive_step(self) -> None:
        steps = _states((1, 1, True, STEP_PENDING), (2, 2, True, STEP_PENDING))
        with self.assertRaises(ConflictError) as raised:
            plan_decision(steps, 2, "approve", allow_parallel=False)
        self.assertEqual(raised.exception.code, "step_not_active")

    def test_parallel_mode_accepts_any_pending_step(self) -> None:
        steps = _states((1, 1, True, STEP_PENDING), (2, 2, True, STEP_PENDING))

        plan = plan_decision(steps, 2, "approve", allow_parallel=True)

        self.assertEqual(plan.run_status, RUN_PENDING)
        self.assertEqual(plan.newly_active_ids, ())

    def test_decided_step_is_a_conflict(self) -> None:
        steps = _states((1, 1, True, STEP_APPROVED), (2, 2, True, STEP_PENDING))
        with self.assertRaises(ConflictError) as raised:
            plan_decision(steps, 1, "approve", allow_parallel=False)
        self.assertEqual(raised.exception.code, "step_already_decided")

    def test_unknown_step(self) -> None:
        with self.assertRaises(NotFoundError):
            plan_decision(_states((1, 1, True, STEP_PENDING)), 99, "approve", allow_parallel=False)

    def test_unknown_action(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            normalize_action("maybe")
        self.assertEqual(raised.exception.code, "invalid_action")


if __name__ == "__main__":
    unittest.main()
