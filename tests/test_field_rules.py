import unittest

from app.contexts.approvals.domain.field_rules import (
    CANONICAL_FIELD_RULES,
    EDIT_APPLY,
    EDIT_QUEUE,
    UNKNOWN_FIELD_PERMISSIVE,
    FieldRule,
    ModificationPolicy,
    build_rule_index,
    evaluate_changes,
    should_notify_on_approval,
)
from app.errors import ValidationError


def _policy(**overrides) -> ModificationPolicy:
    attrs = {"rules": build_rule_index(CANONICAL_FIELD_RULES)}
    attrs.update(overrides)
    return ModificationPolicy(**attrs)


class FieldRuleIndexTest(unittest.TestCase):
    def test_canonical_rules_have_unique_keys(self) -> None:
        index = build_rule_index(CANONICAL_FIELD_RULES)
        self.assertEqual(len(index), len(CANONICAL_FIELD_RULES))
        self.assertFalse(index["rfqId"].editable)
        self.assertTrue(index["closeDateTime"].requires_approval)
        self.assertTrue(index["closeDateTime"].notify_suppliers)

    def test_duplicate_keys_are_rejected(self) -> None:
        rules = [FieldRule(field_key="currency", label="Currency"), FieldRule(field_key="currency", label="Again")]
        with self.assertRaises(ValidationError) as raised:
            build_rule_index(rules)
        self.assertEqual(raised.exception.code, "duplicate_field_key")
        self.assertEqual(raised.exception.payload, {"fields": ["currency"]})


class EvaluateChangesTest(unittest.TestCase):
    def test_mixed_batch_splits_direct_and_queued(self) -> None:
        decisions = evaluate_changes(
            _policy(),
            {"currency": "EUR", "closeDateTime": "2026-11-01T17:00:00Z"},
            {"currency": "USD", "closeDateTime": "2026-10-30T17:00:00Z"},
        )

        by_field = {decision.field_key: decision for decision in decisions}
        self.assertEqual(by_field["currency"].outcome, EDIT_APPLY)
        self.assertEqual(by_field["closeDateTime"].outcome, EDIT_QUEUE)
        self.assertTrue(by_field["closeDateTime"].notify_suppliers)
        self.assertEqual(
            by_field["closeDateTime"].summary_entry(),
            {"from": "2026-10-30T17:00:00Z", "to": "2026-11-01T17:00:00Z"},
        )

    def test_locked_field_refuses_the_whole_batch(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            evaluate_changes(_policy(), {"currency": "EUR", "rfqId": 99}, {"currency": "USD", "rfqId": 1})
        self.assertEqual(raised.exception.code, "field_not_editable")
        self.assertEqual(raised.exception.payload["fields"], ["rfqId"])

    def test_unchanged_values_are_ignored(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            evaluate_changes(_policy(), {"currency": "USD"}, {"currency": "USD"})
        self.assertEqual(raised.exception.code, "no_changes")

    def test_unknown_field_requires_approval_by_default(self) -> None:
        decisions = evaluate_changes(_policy(), {"warrantyTerms": "24 months"}, {})
        self.assertEqual(decisions[0].outcome, EDIT_QUEUE)

    def test_unknown_field_applies_when_permissive(self) -> None:
        decisions = evaluate_changes(_policy(unknown_field_policy=UNKNOWN_FIELD_PERMISSIVE), {"warrantyTerms": "24"}, {})
        self.assertEqual(decisions[0].outcome, EDIT_APPLY)
        self.assertFalse(decisions[0].notify_suppliers)

    def test_notify_all_flag_marks_every_change(self) -> None:
        decisions = evaluate_changes(_policy(notify_all_suppliers=True), {"currency": "EUR"}, {"currency": "USD"})
        self.assertTrue(decisions[0].notify_suppliers)


class NotifyOnApprovalTest(unittest.TestCase):
    def test_notify_follows_field_flags(self) -> None:
        self.assertTrue(should_notify_on_approval(_policy(), ["title", "items"]))
        self.assertFalse(should_notify_on_approval(_policy(), ["title", "budget"]))

    def test_notify_all_overrides_field_flags(self) -> None:
        self.assertTrue(should_notify_on_approval(_policy(notify_all_suppliers=True), ["title"]))


if __name__ == "__main__":
    unittest.main()
