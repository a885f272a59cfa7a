"""
Parser dei file FatturaPA.

- p7m_extractor    -> recupero dell'XML da buste firmate (P7M) o XML in chiaro
- fatturapa_parser -> conversione dell'XML in InvoiceDTO
"""

from .fatturapa_parser import InvoiceDTO, parse_invoice
from .p7m_extractor import extract_xml

__all__ = [
    "InvoiceDTO",
    "parse_invoice",
    "extract_xml",
]
