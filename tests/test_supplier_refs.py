import unittest

from app.contexts.approvals.domain.supplier_refs import (
    InlineSupplier,
    Recipient,
    SupplierById,
    dedupe_recipients,
    parse_supplier_ref,
    parse_supplier_refs,
    refs_to_payload,
)
from app.errors import ValidationError


class SupplierRefTest(unittest.TestCase):
    def test_bare_ids_become_registry_references(self) -> None:
        self.assertEqual(parse_supplier_ref(12), SupplierById(supplier_id="12"))
        self.assertEqual(parse_supplier_ref(" 7 "), SupplierById(supplier_id="7"))

    def test_inline_supplier_reads_nested_user_email(self) -> None:
        ref = parse_supplier_ref({"companyName": "Acme", "user": {"email": "Sales@Acme.com"}})
        self.assertEqual(ref, InlineSupplier(name="Acme", email="sales@acme.com", supplier_id=""))

    def test_object_with_id_only_is_a_registry_reference(self) -> None:
        self.assertEqual(parse_supplier_ref({"id": 4, "name": "No email"}), SupplierById(supplier_id="4"))

    def test_stored_payload_parses_back(self) -> None:
        refs = [SupplierById(supplier_id="3"), InlineSupplier(name="Acme", email="a@acme.com", supplier_id="9")]
        self.assertEqual(parse_supplier_refs(refs_to_payload(refs)), refs)

    def test_invalid_references(self) -> None:
        for raw in (None, True, "", {"name": "nobody"}, 1.5):
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationError):
                    parse_supplier_ref(raw)
        with self.assertRaises(ValidationError):
            parse_supplier_refs("12")

    def test_dedupe_by_email_then_id(self) -> None:
        recipients = [
            Recipient(supplier_id="1", email="a@x.com"),
            Recipient(supplier_id="2", email="A@x.com"),
            Recipient(supplier_id="3", email=""),
            Recipient(supplier_id="3", email=""),
        ]
        unique = dedupe_recipients(recipients)
        self.assertEqual([recipient.supplier_id for recipient in unique], ["1", "3"])


if __name__ == "__main__":
    unittest.main()
