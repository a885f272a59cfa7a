from __future__ import annotations

from fatture.parsers.fatturapa_parser import InvoiceDTO
from fatture.services.duplicate_service import business_key, find_duplicate, is_duplicate


def _record(**overrides):
    data = {
        "id": "rec-1",
        "invoice_number": "001",
        "invoice_date": "2024-01-15",
        "supplier_vat": "01234567890",
        "supplier_fiscal_code": "RSSMRA80A01H501U",
    }
    data.update(overrides)
    return data


class TestFindDuplicate:
    def test_same_number_date_and_vat(self) -> None:
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15", supplier_vat="01234567890")
        assert find_duplicate(candidate, [_record()])["id"] == "rec-1"

    def test_fiscal_code_alone_is_enough(self) -> None:
        candidate = InvoiceDTO(
            invoice_number="001", invoice_date="2024-01-15", supplier_fiscal_code="RSSMRA80A01H501U"
        )
        assert is_duplicate(candidate, [_record(supplier_vat=None)])

    def test_vat_alone_is_enough(self) -> None:
        candidate = InvoiceDTO(
            invoice_number="001", invoice_date="2024-01-15",
            supplier_vat="01234567890", supplier_fiscal_code="ALTRO",
        )
        assert is_duplicate(candidate, [_record()])

    def test_different_supplier(self) -> None:
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15", supplier_vat="99999999999")
        assert find_duplicate(candidate, [_record()]) is None

    def test_different_date(self) -> None:
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-16", supplier_vat="01234567890")
        assert not is_duplicate(candidate, [_record()])

    def test_different_number(self) -> None:
        candidate = InvoiceDTO(invoice_number="002", invoice_date="2024-01-15", supplier_vat="01234567890")
        assert not is_duplicate(candidate, [_record()])

    def test_empty_identifiers_never_match_populated_ones(self) -> None:
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15", supplier_vat="")
        assert not is_duplicate(candidate, [_record(supplier_fiscal_code=None)])

    def test_no_identifiers_on_either_side(self) -> None:
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15")
        record = _record(supplier_vat=None, supplier_fiscal_code="  ")
        assert is_duplicate(candidate, [record])

    def test_is_symmetric(self) -> None:
        a = _record(id="a", supplier_fiscal_code=None)
        b = _record(id="b", supplier_vat="01234567890", supplier_fiscal_code="XYZ")
        assert is_duplicate(a, [b]) == is_duplicate(b, [a])

    def test_works_with_objects(self) -> None:
        existing = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15", supplier_vat="01234567890")
        candidate = InvoiceDTO(invoice_number="001", invoice_date="2024-01-15", supplier_vat="01234567890")
        assert find_duplicate(candidate, [existing]) is existing

    def test_no_existing_records(self) -> None:
        assert find_duplicate(InvoiceDTO(invoice_number="001"), []) is None


class TestBusinessKey:
    def test_normalizes_blank_values(self) -> None:
        dto = InvoiceDTO(invoice_number=" 001 ", invoice_date="2024-01-15", supplier_vat="")
        assert business_key(dto) == ("001", "2024-01-15", None, None)
