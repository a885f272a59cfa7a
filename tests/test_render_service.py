"""Tests for HTML rendering and the PDF backend."""

from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import List
from unittest.mock import patch

import lxml.html
import pytest

from fatture.errors import RenderError
from fatture.parsers.fatturapa_parser import (
    InvoiceDTO,
    LineItemDTO,
    PartyAddressDTO,
    PaymentDetailDTO,
)
from fatture.services import render_service
from fatture.services.render_service import (
    PdfRenderBackend,
    decode_document_type,
    decode_payment_method,
    decode_vat_collectability,
    format_address,
    render_html,
)


def _invoice(**overrides) -> InvoiceDTO:
    data = dict(
        invoice_number="001",
        invoice_date="2024-01-15",
        document_type="TD01",
        supplier_name="Fornitore Srl",
        supplier_vat="01234567890",
        supplier_address=PartyAddressDTO(street="Via Roma", number="1", postal_code="00100", city="Roma", province="RM", country="IT"),
        customer_name="Cliente Spa",
        customer_vat="09876543210",
        taxable_amount=Decimal("1000.00"),
        tax_amount=Decimal("220.00"),
        total_amount=Decimal("1220.00"),
        vat_collectability="I",
        line_items=[
            LineItemDTO(
                number=1, code="C1", description="Consulenza", quantity=Decimal("1.00"),
                unit_price=Decimal("1000.00"), vat_percent=Decimal("22.00"), total=Decimal("1000.00"),
                has_quantity=True, has_explicit_total=True,
            ),
            LineItemDTO(
                number=2, description="Rif. DDT 15", unit_price=Decimal("0"), total=Decimal("0"),
                has_quantity=False, has_explicit_total=False,
            ),
        ],
        payment_details=[PaymentDetailDTO(method="MP05", due_date="2024-02-15", amount=Decimal("1220.00"))],
    )
    data.update(overrides)
    return InvoiceDTO(**data)


def _line_rows(html: str) -> List[List[str]]:
    doc = lxml.html.fromstring(html)
    return [
        [td.text_content().strip() for td in row.findall("td")]
        for row in doc.xpath('//tr[@class="lineItem"]')
    ]


class TestDecoders:
    def test_document_type(self) -> None:
        assert decode_document_type("TD01") == "TD01 - Fattura"
        assert decode_document_type("TD99") == "TD99 - Documento"
        assert decode_document_type(None) == "Documento"

    def test_payment_method(self) -> None:
        assert decode_payment_method("MP05") == "MP05 - Bonifico"
        assert decode_payment_method("MP99") == "MP99 - Non specificato"
        assert decode_payment_method("") == "Non specificato"

    def test_vat_collectability(self) -> None:
        assert decode_vat_collectability("S") == "S - Scissione dei pagamenti (split payment)"
        assert decode_vat_collectability(None) == "-"

    def test_address(self) -> None:
        address = PartyAddressDTO(street="Via Roma", number="1", postal_code="00100", city="Roma", province="RM", country="IT")
        assert format_address(address) == "Via Roma 1 00100 Roma (RM) IT"
        assert format_address(PartyAddressDTO()) == ""
        assert format_address(None) == ""


class TestRenderHtml:
    def test_header_and_totals(self) -> None:
        html = render_html(_invoice())

        assert "Fornitore Srl" in html
        assert "Cliente Spa" in html
        assert "TD01 - Fattura" in html
        assert "15-01-2024" in html
        assert "EUR 1.220,00" in html
        assert "Via Roma 1 00100 Roma (RM) IT" in html
        assert "MP05 - Bonifico" in html

    def test_populated_line_shows_every_cell(self) -> None:
        rows = _line_rows(render_html(_invoice()))

        assert rows[0] == ["C1", "Consulenza", "1,00", "EUR 1.000,00", "0,00", "22,00", "EUR 1.000,00"]

    def test_zero_total_line_leaves_numeric_cells_empty(self) -> None:
        rows = _line_rows(render_html(_invoice()))

        assert rows[1] == ["", "Rif. DDT 15", "", "", "", "", ""]

    def test_line_without_quantity_keeps_amounts(self) -> None:
        item = LineItemDTO(
            number=1, description="Canone", unit_price=Decimal("100"), total=Decimal("100"),
            vat_percent=Decimal("22"), has_quantity=False, has_explicit_total=True,
        )
        rows = _line_rows(render_html(_invoice(line_items=[item])))

        assert rows == [["", "Canone", "", "EUR 100,00", "0,00", "22,00", "EUR 100,00"]]

    def test_page_break_rules(self) -> None:
        html = render_html(_invoice())

        assert "tr { page-break-inside: avoid; }" in html
        assert ".finalSection { page-break-inside: avoid; }" in html
        assert "size: A4" in html

    def test_values_are_escaped(self) -> None:
        html = render_html(_invoice(supplier_name="<script>alert(1)</script>"))

        assert "<script>alert(1)</script>" not in html
        assert "&lt;script&gt;" in html

    def test_invoice_without_lines(self) -> None:
        html = render_html(_invoice(line_items=[], payment_details=[]))

        assert _line_rows(html) == []
        assert "TOTALE DOCUMENTO" in html

    def test_template_error_becomes_render_error(self) -> None:
        with patch.object(render_service, "format_address", side_effect=TypeError("boom")):
            with pytest.raises(RenderError, match="HTML"):
                render_html(_invoice())


class TestPdfRenderBackend:
    def test_reuses_session_between_renders(self) -> None:
        backend = PdfRenderBackend(timeout=5)
        with patch.object(render_service, "_create_font_config", return_value=object()) as font_config, \
                patch.object(render_service, "_write_pdf", return_value=b"%PDF-1.7") as write_pdf:
            assert backend.render_pdf("<p>a</p>") == b"%PDF-1.7"
            assert backend.render_pdf("<p>b</p>") == b"%PDF-1.7"

        assert font_config.call_count == 1
        assert write_pdf.call_count == 2
        assert backend.is_healthy()
        backend.shutdown()

    def test_failure_discards_session(self) -> None:
        backend = PdfRenderBackend(timeout=5)
        with patch.object(render_service, "_create_font_config", side_effect=lambda: object()) as font_config, \
                patch.object(render_service, "_write_pdf", side_effect=[RuntimeError("cairo"), b"%PDF-1.7"]):
            with pytest.raises(RenderError, match="cairo"):
                backend.render_pdf("<p>a</p>")
            assert not backend.is_healthy()

            assert backend.render_pdf("<p>b</p>") == b"%PDF-1.7"

        assert font_config.call_count == 2
        assert backend.is_healthy()
        backend.shutdown()

    def test_timeout(self) -> None:
        backend = PdfRenderBackend(timeout=0.05)

        def slow(html_content, font_config):
            time.sleep(0.5)
            return b"%PDF-1.7"

        with patch.object(render_service, "_create_font_config", return_value=object()), \
                patch.object(render_service, "_write_pdf", side_effect=slow):
            with pytest.raises(RenderError, match="Timeout"):
                backend.render_pdf("<p>lento</p>")

        assert not backend.is_healthy()
        backend.shutdown()

    def test_hung_render_does_not_block_next_file(self) -> None:
        backend = PdfRenderBackend(timeout=0.3, max_workers=1)
        release = threading.Event()

        def write_pdf(html_content, font_config):
            if "HANG" in html_content:
                release.wait(5)
            return b"%PDF-1.7"

        try:
            with patch.object(render_service, "_create_font_config", side_effect=lambda: object()), \
                    patch.object(render_service, "_write_pdf", side_effect=write_pdf):
                with pytest.raises(RenderError, match="Timeout"):
                    backend.render_pdf("<p>HANG</p>")

                assert backend.render_pdf("<p>ok</p>") == b"%PDF-1.7"
        finally:
            release.set()
            backend.shutdown()

    def test_empty_output_is_an_error(self) -> None:
        backend = PdfRenderBackend(timeout=5)
        with patch.object(render_service, "_create_font_config", return_value=object()), \
                patch.object(render_service, "_write_pdf", return_value=b""):
            with pytest.raises(RenderError, match="vuoto"):
                backend.render_pdf("<p>a</p>")
        backend.shutdown()

    def test_session_recycled_after_max_renders(self) -> None:
        backend = PdfRenderBackend(timeout=5, max_renders=2)
        with patch.object(render_service, "_create_font_config", side_effect=lambda: object()) as font_config, \
                patch.object(render_service, "_write_pdf", return_value=b"%PDF-1.7"):
            for _ in range(3):
                backend.render_pdf("<p>a</p>")

        assert font_config.call_count == 2
        backend.shutdown()

    def test_backend_unavailable(self) -> None:
        backend = PdfRenderBackend(timeout=5)
        with patch.object(render_service, "_create_font_config", side_effect=OSError("no fonts")):
            with pytest.raises(RenderError, match="non disponibile"):
                backend.render_pdf("<p>a</p>")
        backend.shutdown()

    def test_not_healthy_before_first_render(self) -> None:
        backend = PdfRenderBackend()
        assert backend.is_healthy() is False
        backend.shutdown()
