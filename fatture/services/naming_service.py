"""
Nome base stabile degli artefatti (XML/HTML/PDF) di una fattura.

Il nome dipende solo dalla chiave di business (numero + data): lo stesso
documento produce sempre gli stessi file, ed è questo che rende idempotenti
le scritture durante l'import.
"""

from __future__ import annotations

import re
from typing import Dict

ARTIFACT_CATEGORIES = ("xml", "html", "pdf")

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")
_NON_DIGIT_RE = re.compile(r"\D")


def derive_base_name(invoice_number: str | None, invoice_date: str | None) -> str:
    """
    ``"INV-001"``, ``"2024-01-15"`` -> ``"INV_001_20240115"``.

    Un numero vuoto o composto solo da punteggiatura produce segmenti di soli ``_``:
    è un caso di qualità del dato accettato, non un errore.
    """
    number = _NON_ALNUM_RE.sub("_", invoice_number or "")
    date_digits = _NON_DIGIT_RE.sub("", invoice_date or "")
    return f"{number}_{date_digits}"


def artifact_filenames(base_name: str) -> Dict[str, str]:
    """Nomi file della terna di artefatti, per categoria."""
    return {category: f"{base_name}.{category}" for category in ARTIFACT_CATEGORIES}
