"""
Registrazione filtri Jinja (app Flask e ambiente di rendering dei documenti).
"""

from __future__ import annotations

from typing import Any, Callable, Dict

from fatture.services.formatting_service import (
    format_amount,
    format_date_ita,
    format_number,
    format_percent,
)


def _payment_method_label(code: Any) -> str:
    from fatture.services.render_service import decode_payment_method

    return decode_payment_method(code)


TEMPLATE_FILTERS: Dict[str, Callable[..., str]] = {
    "format_amount": format_amount,
    "format_number": format_number,
    "format_percent": format_percent,
    "format_date_ita": format_date_ita,
    "payment_method_label": _payment_method_label,
}


def register_template_filters(target: Any) -> None:
    """``target`` può essere l'app Flask o un ``jinja2.Environment``."""
    if hasattr(target, "add_template_filter"):
        for name, func in TEMPLATE_FILTERS.items():
            target.add_template_filter(func, name)
    else:
        target.filters.update(TEMPLATE_FILTERS)
