"""
Rilevamento fatture duplicate.

Chiave di business: numero + data + (P.IVA oppure codice fiscale del fornitore).
L'OR è inclusivo: basta che coincida uno dei due identificativi, così una
fattura importata in passato con la sola P.IVA (o il solo CF) viene comunque
riconosciuta.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

_IDENTITY_FIELDS = ("supplier_vat", "supplier_fiscal_code")


def _field(obj: Any, name: str) -> Optional[str]:
    value = obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _same_supplier(candidate: Any, record: Any) -> bool:
    """
    Confronta gli identificativi del fornitore.

    Un identificativo conta solo se valorizzato su entrambi i lati. Se nessuno dei
    due record riporta identificativi, la coppia numero + data basta da sola.
    """
    candidate_ids = {name: _field(candidate, name) for name in _IDENTITY_FIELDS}
    record_ids = {name: _field(record, name) for name in _IDENTITY_FIELDS}

    for name in _IDENTITY_FIELDS:
        if candidate_ids[name] and candidate_ids[name] == record_ids[name]:
            return True

    return not any(candidate_ids.values()) and not any(record_ids.values())


def find_duplicate(candidate: Any, existing_records: Iterable[Any]) -> Optional[Any]:
    """
    Restituisce il primo record esistente con la stessa chiave di business, o None.

    ``candidate`` e i record possono essere DTO, modelli SQLAlchemy o dict.
    """
    number = _field(candidate, "invoice_number")
    invoice_date = _field(candidate, "invoice_date")

    for record in existing_records:
        if _field(record, "invoice_number") != number:
            continue
        if _field(record, "invoice_date") != invoice_date:
            continue
        if _same_supplier(candidate, record):
            return record
    return None


def is_duplicate(candidate: Any, existing_records: Iterable[Any]) -> bool:
    return find_duplicate(candidate, existing_records) is not None


def business_key(candidate: Any) -> tuple:
    """Chiave usata per riservare una fattura in lavorazione (stesso batch, file diversi)."""
    return (
        _field(candidate, "invoice_number"),
        _field(candidate, "invoice_date"),
        _field(candidate, "supplier_vat"),
        _field(candidate, "supplier_fiscal_code"),
    )
