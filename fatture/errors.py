"""
Eccezioni della pipeline di import fatture.

Ogni errore per-file porta con sé un ``code`` opzionale: il chiamante (UI, API)
può distinguere i casi particolari (es. fattura duplicata) senza analizzare il
testo del messaggio.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Errore generico durante l'elaborazione di un singolo file."""

    code: Optional[str] = None


class ExtractionError(IngestionError):
    """Nessuna strategia è riuscita a estrarre l'XML dalla busta firmata (P7M)."""


class ParseError(IngestionError):
    """XML non riconoscibile come FatturaPA (root o sezioni obbligatorie assenti)."""


class RenderError(IngestionError):
    """Errore o timeout del backend di rendering HTML/PDF."""


class PersistenceError(IngestionError):
    """Scrittura degli artefatti o del record fallita dopo un parsing riuscito."""


class DuplicateInvoiceError(IngestionError):
    """La fattura ha la stessa chiave di business di un record già presente."""

    code = "DUPLICATE_INVOICE"

    def __init__(
        self,
        filename: str,
        invoice_number: str,
        invoice_date: str,
        *,
        supplier_vat: Optional[str] = None,
        supplier_fiscal_code: Optional[str] = None,
        existing_id: Optional[str] = None,
    ):
        self.filename = filename
        self.invoice_number = invoice_number
        self.invoice_date = invoice_date
        self.supplier_vat = supplier_vat
        self.supplier_fiscal_code = supplier_fiscal_code
        self.existing_id = existing_id
        super().__init__(
            f"Fattura duplicata: {filename} "
            f"(Numero: {invoice_number}, Data: {invoice_date})"
        )

    def context(self) -> Dict[str, Any]:
        return {
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date,
            "supplier_vat": self.supplier_vat,
            "supplier_fiscal_code": self.supplier_fiscal_code,
            "existing_id": self.existing_id,
        }


class BatchSubmissionError(Exception):
    """Batch rifiutato prima della creazione del job (nessun file, file troppo grandi, ...)."""

    def __init__(self, message: str, files: Optional[list] = None):
        super().__init__(message)
        self.files = files or []


class JobNotFoundError(LookupError):
    """Job di upload inesistente o già scaduto."""
