"""
Pacchetto per le API JSON.

Contiene:
- api_invoices_bp -> upload, avanzamento (SSE), gestione fatture e artefatti
"""

from .api_invoices import api_invoices_bp

__all__ = [
    "api_invoices_bp",
]
