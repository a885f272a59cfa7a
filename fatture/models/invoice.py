"""
Modello Invoice (tabella: invoices).

Un record per ogni file importato con successo. Indirizzi, rate di pagamento e
righe di dettaglio sono salvati come JSON: servono solo per la visualizzazione
e non vengono interrogati.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import validates

from fatture.extensions import db

STATUS_NOT_PRINTED = "not_printed"
STATUS_PRINTED = "printed"
VALID_STATUSES = (STATUS_NOT_PRINTED, STATUS_PRINTED)

# Stati delle versioni precedenti, accettati in lettura e scrittura
LEGACY_STATUS_MAP = {
    "received": STATUS_NOT_PRINTED,
    "overdue": STATUS_NOT_PRINTED,
    "paid": STATUS_PRINTED,
}


def normalize_status(value):
    """
    Riporta uno stato (anche legacy) a ``not_printed``/``printed``.

    :raises ValueError: per valori sconosciuti
    """
    if value is None or value == "":
        return STATUS_NOT_PRINTED
    status = str(value).strip().lower()
    status = LEGACY_STATUS_MAP.get(status, status)
    if status not in VALID_STATUSES:
        raise ValueError(f"Stato non valido: {value}")
    return status


def stored_status_values(status):
    """Valori salvati (stato corrente più alias legacy) che si leggono come ``status``."""
    status = normalize_status(status)
    return [status] + [legacy for legacy, current in LEGACY_STATUS_MAP.items() if current == status]



def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _amount(value):
    if value is None:
        return "0.00"
    return str(Decimal(value).quantize(Decimal("0.01")))


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # File sorgente
    filename = db.Column(db.String(255), nullable=False)
    original_format = db.Column(db.String(8), nullable=False, default="xml")

    # Chiave di business
    invoice_number = db.Column(db.String(64), nullable=False, index=True)
    invoice_date = db.Column(db.String(10), nullable=False, index=True)
    document_type = db.Column(db.String(8), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="EUR")

    # Cedente / Prestatore
    supplier_name = db.Column(db.String(255), nullable=True, index=True)
    supplier_vat = db.Column(db.String(32), nullable=True, index=True)
    supplier_fiscal_code = db.Column(db.String(32), nullable=True, index=True)
    supplier_address = db.Column(db.JSON, nullable=True)

    # Cessionario / Committente
    customer_name = db.Column(db.String(255), nullable=True)
    customer_vat = db.Column(db.String(32), nullable=True)
    customer_address = db.Column(db.JSON, nullable=True)

    # Importi
    taxable_amount = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(15, 2), nullable=False, default=0)

    # Pagamento
    payment_method = db.Column(db.String(8), nullable=True)
    payment_due_date = db.Column(db.String(10), nullable=True)
    payment_details = db.Column(db.JSON, nullable=False, default=list)

    line_items = db.Column(db.JSON, nullable=False, default=list)

    # Stato di lavorazione
    status = db.Column(db.String(16), nullable=False, default=STATUS_NOT_PRINTED, index=True)
    marked = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)

    # Artefatti (nomi file nello storage, per categoria)
    xml_path = db.Column(db.String(255), nullable=True)
    html_path = db.Column(db.String(255), nullable=True)
    pdf_path = db.Column(db.String(255), nullable=True)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    @validates("status")
    def _validate_status(self, key, value):
        return normalize_status(value)

    @property
    def normalized_status(self):
        return normalize_status(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "filename": self.filename,
            "original_format": self.original_format,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date,
            "document_type": self.document_type,
            "currency": self.currency,
            "supplier_name": self.supplier_name,
            "supplier_vat": self.supplier_vat,
            "supplier_fiscal_code": self.supplier_fiscal_code,
            "supplier_address": self.supplier_address,
            "customer_name": self.customer_name,
            "customer_vat": self.customer_vat,
            "customer_address": self.customer_address,
            "taxable_amount": _amount(self.taxable_amount),
            "tax_amount": _amount(self.tax_amount),
            "total_amount": _amount(self.total_amount),
            "payment_method": self.payment_method,
            "payment_due_date": self.payment_due_date,
            "payment_details": self.payment_details or [],
            "line_items": self.line_items or [],
            "status": self.normalized_status,
            "marked": bool(self.marked),
            "notes": self.notes,
            "tags": self.tags or [],
            "xml_path": self.xml_path,
            "html_path": self.html_path,
            "pdf_path": self.pdf_path,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number} del {self.invoice_date} ({self.id})>"
