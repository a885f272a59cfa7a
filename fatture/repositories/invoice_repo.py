"""
Repository per Invoice (tabella 'invoices').

Interfaccia usata dalla pipeline di import: ``create`` e ``find_by_business_key``
(per il controllo duplicati); le altre operazioni servono alla gestione delle fatture.
Il commit è responsabilità della UnitOfWork.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_

from fatture.models import Invoice
from fatture.models.invoice import normalize_status, stored_status_values
from fatture.repositories.base import SqlAlchemyRepository

UPDATABLE_FIELDS = frozenset({"status", "marked", "notes", "tags"})


class InvoiceRepository(SqlAlchemyRepository[Invoice]):
    def __init__(self, session):
        super().__init__(session, Invoice)

    def create(self, data: Dict[str, Any]) -> Invoice:
        invoice = Invoice(**data)
        self.add(invoice)
        self.session.flush()
        return invoice

    def get_all(self) -> List[Invoice]:
        """Tutte le fatture, dalla più recente (created_at decrescente)."""
        return (
            self.session.query(Invoice)
            .order_by(Invoice.created_at.desc())
            .all()
        )

    def find_by_business_key(self, invoice_number: str, invoice_date: str) -> List[Invoice]:
        return (
            self.session.query(Invoice)
            .filter(Invoice.invoice_number == invoice_number)
            .filter(Invoice.invoice_date == invoice_date)
            .all()
        )

    def update(self, invoice_id: str, fields: Dict[str, Any]) -> Optional[Invoice]:
        invoice = self.get_by_id(invoice_id)
        if invoice is None:
            return None
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                raise ValueError(f"Campo non aggiornabile: {key}")
            setattr(invoice, key, value)
        self.session.flush()
        return invoice

    def delete(self, invoice_id: str) -> bool:
        invoice = self.get_by_id(invoice_id)
        if invoice is None:
            return False
        self.remove(invoice)
        self.session.flush()
        return True

    def search(
        self,
        *,
        search: Optional[str] = None,
        status: Optional[str] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Invoice], int]:
        """
        Ricerca paginata. ``search`` confronta numero, fornitore, P.IVA e nome file;
        anno e mese filtrano sulla data documento (``YYYY-MM-DD``).
        """
        query = self.session.query(Invoice)

        if search:
            like = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Invoice.invoice_number.ilike(like),
                    Invoice.supplier_name.ilike(like),
                    Invoice.supplier_vat.ilike(like),
                    Invoice.filename.ilike(like),
                )
            )
        if status:
            query = query.filter(Invoice.status.in_(stored_status_values(status)))
        if year:
            prefix = f"{int(year):04d}-"
            if month:
                prefix += f"{int(month):02d}-"
            query = query.filter(Invoice.invoice_date.like(f"{prefix}%"))

        total = query.count()
        items = (
            query.order_by(Invoice.created_at.desc())
            .offset(max(page - 1, 0) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.session.query(Invoice.status, func.count(Invoice.id))
            .group_by(Invoice.status)
            .all()
        )
        counts: Dict[str, int] = {}
        for status, count in rows:
            key = normalize_status(status)
            counts[key] = counts.get(key, 0) + count
        return counts
