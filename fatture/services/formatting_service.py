"""
Helper per la formattazione di importi e date nei documenti generati.

Convenzione italiana: ``1.220,00`` (punto per le migliaia, virgola per i decimali)
e date ``GG-MM-AAAA``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any


def format_number(value: Any, decimals: int = 2, use_grouping: bool = True) -> str:
    if value in (None, ""):
        return ""
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return str(value)

    if decimals < 0:
        decimals = 0

    quant = Decimal("1") if decimals == 0 else Decimal("1").scaleb(-decimals)
    try:
        number = number.quantize(quant)
    except InvalidOperation:
        pass

    format_spec = f",.{decimals}f" if use_grouping else f".{decimals}f"
    formatted = format(number, format_spec)
    # Scambio separatori: 1,220.00 -> 1.220,00
    return formatted.replace(",", "\x00").replace(".", ",").replace("\x00", ".")


def format_amount(value: Any, use_grouping: bool = True) -> str:
    return format_number(value, decimals=2, use_grouping=use_grouping)


def format_percent(value: Any) -> str:
    return format_number(value, decimals=2, use_grouping=False)


def format_date_ita(value: Any) -> str:
    """``2024-01-15`` (o date/datetime) -> ``15-01-2024``; valori non riconosciuti restano invariati."""
    if value in (None, ""):
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime("%d-%m-%Y")
    text = str(value).strip()
    try:
        parsed = datetime.strptime(text[:10], "%Y-%m-%d")
    except ValueError:
        return text
    return parsed.strftime("%d-%m-%Y")
