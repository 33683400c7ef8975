import re
import unittest
from pathlib import Path

from app.ui_strings import MESSAGES, STATUS_GROUPS, email_subject, error_message, status_items_for_group


_APP_ROOT = Path(__file__).resolve().parents[1] / "app"


class UiStringsStatusGroupsTest(unittest.TestCase):
    def test_required_status_groups_exist(self) -> None:
        required_groups = {"rfq_approval", "approval_run", "approval_step", "modification"}
        self.assertTrue(required_groups.issubset(set(STATUS_GROUPS.keys())))

    def test_status_groups_are_not_empty(self) -> None:
        for group_name in ("rfq_approval", "approval_run", "approval_step", "modification"):
            self.assertTrue(status_items_for_group(group_name), f"empty group: {group_name}")

    def test_status_labels_and_descriptions_are_not_empty(self) -> None:
        for group_name, statuses in STATUS_GROUPS.items():
            for status in statuses:
                self.assertTrue((status.get("label") or "").strip(), f"empty label in {group_name}:{status.get('key')}")
                self.assertTrue(
                    (status.get("description") or "").strip(),
                    f"empty description in {group_name}:{status.get('key')}",
                )

    def test_run_and_step_statuses_match_the_workflow(self) -> None:
        run_keys = {item["key"] for item in STATUS_GROUPS["approval_run"]}
        step_keys = {item["key"] for item in STATUS_GROUPS["approval_step"]}
        self.assertEqual(run_keys, {"PENDING", "APPROVED", "REJECTED", "WITHDRAWN"})
        self.assertEqual(step_keys, {"PENDING", "APPROVED", "REJECTED", "SKIPPED"})


class UiStringsMessagesTest(unittest.TestCase):
    def test_every_raised_error_code_has_a_message(self) -> None:
        pattern = re.compile(r'(?:Error|error)\(\s*code="([a-z_]+)"')
        missing = set()
        for source in _APP_ROOT.rglob("*.py"):
            for code in pattern.findall(source.read_text(encoding="utf-8")):
                if code not in MESSAGES["error"]:
                    missing.add(f"{source.name}:{code}")
        self.assertEqual(missing, set())

    def test_unknown_key_falls_back(self) -> None:
        self.assertEqual(error_message("no_such_key"), "no_such_key")
        self.assertEqual(error_message("no_such_key", "fallback"), "fallback")

    def test_email_subject_formats_title(self) -> None:
        self.assertEqual(email_subject("approval_required_subject", title="Valves"), "Approval Required: Valves")
        self.assertEqual(email_subject("rfq_changed_subject"), "RFQ updated: {title}")


if __name__ == "__main__":
    unittest.main()
