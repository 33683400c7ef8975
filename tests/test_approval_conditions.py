import unittest

from app.contexts.approvals.domain.conditions import Condition, evaluate_condition, lookup_field, parse_condition


class ParseConditionTest(unittest.TestCase):
    def test_free_text_expression_is_parsed(self) -> None:
        condition = parse_condition("Budget > 50000")
        self.assertEqual(condition, Condition(field="Budget", operator=">", value="50000"))

    def test_structured_triple_wins_over_text(self) -> None:
        condition = parse_condition(
            "Budget > 1",
            condition_type="budget",
            condition_operator=">=",
            condition_value=10000,
        )
        self.assertEqual(condition, Condition(field="budget", operator=">=", value="10000"))

    def test_descriptive_text_means_unconditional(self) -> None:
        self.assertIsNone(parse_condition("Always required"))
        self.assertIsNone(parse_condition(""))
        self.assertIsNone(parse_condition(None))

    def test_incomplete_structured_triple_falls_back_to_text(self) -> None:
        condition = parse_condition("currency = USD", condition_type="budget", condition_operator="??")
        self.assertEqual(condition, Condition(field="currency", operator="=", value="USD"))


class EvaluateConditionTest(unittest.TestCase):
    def test_numeric_comparison(self) -> None:
        condition = parse_condition("Budget > 50000")
        self.assertTrue(evaluate_condition(condition, {"budget": 75000}))
        self.assertFalse(evaluate_condition(condition, {"budget": "20,000"}))

    def test_field_lookup_ignores_case_and_separators(self) -> None:
        found, value = lookup_field({"close_date_type": "fixed"}, "Close Date Type")
        self.assertTrue(found)
        self.assertEqual(value, "fixed")

    def test_missing_field_keeps_the_step(self) -> None:
        with self.assertLogs("app", level="WARNING") as captured:
            self.assertTrue(evaluate_condition(parse_condition("Budget > 50000"), {"title": "Pumps"}))
        self.assertTrue(any("approval_condition_field_missing" in line for line in captured.output))

    def test_text_equality_is_case_insensitive(self) -> None:
        condition = parse_condition("currency = usd")
        self.assertTrue(evaluate_condition(condition, {"currency": "USD"}))
        self.assertFalse(evaluate_condition(parse_condition("currency != usd"), {"currency": "USD"}))

    def test_ordering_on_text_is_false(self) -> None:
        self.assertFalse(evaluate_condition(parse_condition("category > b"), {"category": "c"}))

    def test_no_condition_always_applies(self) -> None:
        self.assertTrue(evaluate_condition(None, {}))


if __name__ == "__main__":
    unittest.main()
