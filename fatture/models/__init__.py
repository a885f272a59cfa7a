"""
Pacchetto per i modelli SQLAlchemy.
"""

from .invoice import Invoice

__all__ = [
    "Invoice",
]
