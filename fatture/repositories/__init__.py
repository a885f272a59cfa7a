"""
Package repositories.
Espone i Repository per l'accesso ai dati.
"""

from .invoice_repo import InvoiceRepository

__all__ = [
    "InvoiceRepository",
]
