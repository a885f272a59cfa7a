"""
Parser per XML FatturaPA.

Questo modulo fornisce:
- DTO (Data Transfer Object) che rappresentano la fattura in forma canonica
- la funzione principale ``parse_invoice(xml_text)`` che restituisce un ``InvoiceDTO``

Versioni supportate (il namespace viene ignorato):
- v1.2: http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.2
- v1.1: http://www.fatturapa.gov.it/sdi/fatturapa/v1.1
- v1.0: http://www.fatturapa.gov.it/sdi/fatturapa/v1.0
- v1.0 semplificata: http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.0

Il parser è pensato per essere:
- tollerante ai campi mancanti (importi a 0, testi a None)
- indipendente da namespace e prefissi: un'unica passata di normalizzazione
  rinomina ogni elemento con il suo local-name prima di qualsiasi lookup
- privo di validazione XSD (documenti malformati ma leggibili sono accettati)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from lxml import etree

from fatture.errors import ParseError

logger = logging.getLogger(__name__)

ROOT_ORDINARY = "FatturaElettronica"
ROOT_SIMPLIFIED = "FatturaElettronicaSemplificata"
ROOT_TAGS = (ROOT_ORDINARY, ROOT_SIMPLIFIED)

NAMESPACES = {
    "v1.2": "http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.2",
    "v1.1": "http://www.fatturapa.gov.it/sdi/fatturapa/v1.1",
    "v1.0": "http://www.fatturapa.gov.it/sdi/fatturapa/v1.0",
    "v1.0-semplificata": "http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.0",
}

# Tolleranza per il controllo (non bloccante) totale = imponibile + imposta
TOTAL_TOLERANCE = Decimal("0.01")

ZERO = Decimal("0")

_DECLARATION_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_TAG_PREFIX_RE = re.compile(r"<(/?)[A-Za-z_][\w.-]*:")
_PREFIXED_ATTR_RE = re.compile(r"\s+[A-Za-z_][\w.-]*:[\w.-]+\s*=\s*(\"[^\"]*\"|'[^']*')")


# =========================
#  DTO (Data Transfer Objects)
# =========================


@dataclass
class PartyAddressDTO:
    """Sede di cedente o cessionario."""

    street: Optional[str] = None
    number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            (self.street, self.number, self.postal_code, self.city, self.province, self.country)
        )

    def to_dict(self) -> dict:
        return {
            "street": self.street,
            "number": self.number,
            "postal_code": self.postal_code,
            "city": self.city,
            "province": self.province,
            "country": self.country,
        }


@dataclass
class LineItemDTO:
    """
    Riga di dettaglio (DettaglioLinee).

    ``has_quantity`` e ``has_explicit_total`` sono flag di presentazione: quando
    sono False il rendering lascia la cella vuota invece di stampare uno zero.
    """

    number: Optional[int] = None
    code: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = ZERO
    discount_percent: Decimal = ZERO
    vat_percent: Decimal = ZERO
    total: Decimal = ZERO
    has_quantity: bool = False
    has_explicit_total: bool = False

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "code": self.code,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "discount_percent": str(self.discount_percent),
            "vat_percent": str(self.vat_percent),
            "total": str(self.total),
            "has_quantity": self.has_quantity,
            "has_explicit_total": self.has_explicit_total,
        }


@dataclass
class PaymentDetailDTO:
    """Singola rata (DettaglioPagamento)."""

    method: Optional[str] = None
    due_date: Optional[str] = None
    amount: Decimal = ZERO

    def to_dict(self) -> dict:
        return {"method": self.method, "due_date": self.due_date, "amount": str(self.amount)}


@dataclass
class VatSummaryDTO:
    """Riga di riepilogo IVA (DatiRiepilogo)."""

    vat_rate: Decimal = ZERO
    taxable_amount: Decimal = ZERO
    vat_amount: Decimal = ZERO
    vat_nature: Optional[str] = None


@dataclass
class InvoiceDTO:
    """Rappresentazione canonica di una fattura, indipendente dalla versione dello schema."""

    invoice_number: str = ""
    invoice_date: str = ""
    document_type: Optional[str] = None
    currency: str = "EUR"

    supplier_name: Optional[str] = None
    supplier_vat: Optional[str] = None
    supplier_fiscal_code: Optional[str] = None
    supplier_address: PartyAddressDTO = field(default_factory=PartyAddressDTO)

    customer_name: Optional[str] = None
    customer_vat: Optional[str] = None
    customer_address: PartyAddressDTO = field(default_factory=PartyAddressDTO)

    taxable_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO

    payment_method: Optional[str] = None
    payment_due_date: Optional[str] = None
    payment_details: List[PaymentDetailDTO] = field(default_factory=list)

    line_items: List[LineItemDTO] = field(default_factory=list)
    vat_summaries: List[VatSummaryDTO] = field(default_factory=list)
    vat_collectability: Optional[str] = None

    root_variant: str = ROOT_ORDINARY
    warnings: List[str] = field(default_factory=list)


# =========================
#  Funzione principale
# =========================


def parse_invoice(xml_text: str) -> InvoiceDTO:
    """
    Converte il testo XML di una FatturaPA in ``InvoiceDTO``.

    :raises ParseError: se la root non è una FatturaPA riconosciuta o mancano
        header, body o DatiGeneraliDocumento
    """
    root = _load_root(xml_text)
    _normalize_tags(root)

    root_tag = root.tag if isinstance(root.tag, str) else ""
    if root_tag not in ROOT_TAGS:
        raise ParseError(
            f"Formato FatturaPA non valido: elemento root non riconosciuto ({root_tag or 'assente'})"
        )

    header = _first(root, "./FatturaElettronicaHeader")
    if header is None:
        raise ParseError("Formato FatturaPA non valido: FatturaElettronicaHeader assente")

    bodies = root.xpath("./FatturaElettronicaBody")
    if not bodies:
        raise ParseError("Formato FatturaPA non valido: FatturaElettronicaBody assente")
    body = bodies[0]

    doc_node = _first(body, "./DatiGenerali/DatiGeneraliDocumento")
    if doc_node is None:
        raise ParseError("Formato FatturaPA non valido: DatiGeneraliDocumento assente")

    invoice = InvoiceDTO(root_variant=root_tag)
    if len(bodies) > 1:
        invoice.warnings.append(
            f"File con {len(bodies)} corpi fattura: importato solo il primo"
        )

    _parse_document_data(doc_node, invoice)
    _parse_party(_first(header, "./CedentePrestatore"), invoice, "supplier")
    _parse_party(_first(header, "./CessionarioCommittente"), invoice, "customer")

    if root_tag == ROOT_SIMPLIFIED:
        _parse_simplified_goods(body, invoice)
    else:
        invoice.line_items = _parse_line_items(body)
        _parse_vat_summaries(body, invoice)
        _parse_payments(body, invoice)

    _check_totals(invoice)

    for warning in invoice.warnings:
        logger.warning(
            warning,
            extra={
                "component": "fatturapa_parser",
                "invoice_number": invoice.invoice_number,
                "invoice_date": invoice.invoice_date,
            },
        )
    return invoice


# =========================
#  Caricamento XML
# =========================


def _load_root(xml_text: str):
    """
    Carica la root con tre tentativi:
    1. parsing rigoroso
    2. parsing dopo rimozione testuale dei prefissi (prefissi non dichiarati)
    3. parser lxml in modalità ``recover``
    """
    text = _DECLARATION_RE.sub("", xml_text.lstrip("\ufeff"), count=1).strip()
    if not text:
        raise ParseError("XML vuoto")

    try:
        return etree.fromstring(text)
    except etree.XMLSyntaxError as exc:
        first_error = exc

    stripped = _strip_prefixes(text)
    try:
        root = etree.fromstring(stripped)
        logger.warning(
            "XML caricato dopo rimozione dei prefissi di namespace",
            extra={"component": "fatturapa_parser", "parse_error": str(first_error)},
        )
        return root
    except etree.XMLSyntaxError:
        pass

    try:
        root = etree.fromstring(stripped, parser=etree.XMLParser(recover=True))
    except etree.XMLSyntaxError as exc:
        raise ParseError(f"XML non parsabile: {first_error}") from exc
    if root is None:
        raise ParseError(f"XML non parsabile: {first_error}")

    logger.warning(
        "XML caricato con recover=True",
        extra={"component": "fatturapa_parser", "parse_error": str(first_error)},
    )
    return root


def _strip_prefixes(text: str) -> str:
    text = _TAG_PREFIX_RE.sub(r"<\1", text)
    return _PREFIXED_ATTR_RE.sub("", text)


def _normalize_tags(root) -> None:
    """Rinomina ogni elemento con il proprio local-name (niente namespace né prefissi)."""
    for el in root.iter():
        if isinstance(el.tag, str):
            el.tag = _localname(el.tag)
    etree.cleanup_namespaces(root)


def _localname(tag: str | None) -> str:
    """Restituisce il local-name di un tag con/senza namespace."""
    if not tag:
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    if ":" in tag:
        return tag.split(":", 1)[1]
    return tag


# =========================
#  Funzioni di supporto (private)
# =========================


def _first(node, xpath: str):
    """Restituisce il primo nodo che soddisfa l'XPath, oppure None."""
    if node is None:
        return None
    res = node.xpath(xpath)
    return res[0] if res else None


def _get_text(node, xpath: str) -> Optional[str]:
    """Restituisce il testo del primo nodo trovato, ripulito, oppure None."""
    target = _first(node, xpath)
    if target is None or target.text is None:
        return None
    text = target.text.strip()
    return text or None


def _to_decimal(value: Optional[str], default: Decimal = ZERO) -> Decimal:
    """Converte una stringa in Decimal; campi assenti o non numerici valgono ``default``."""
    if not value:
        return default
    try:
        result = Decimal(value.replace(",", "."))
    except (InvalidOperation, AttributeError):
        return default
    return result if result.is_finite() else default


def _to_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# ---------- Dati generali ----------


def _parse_document_data(doc_node, invoice: InvoiceDTO) -> None:
    invoice.invoice_number = _get_text(doc_node, "./Numero") or ""
    invoice.invoice_date = _get_text(doc_node, "./Data") or ""
    invoice.document_type = _get_text(doc_node, "./TipoDocumento")
    invoice.currency = _get_text(doc_node, "./Divisa") or "EUR"
    invoice.total_amount = _to_decimal(_get_text(doc_node, "./ImportoTotaleDocumento"))

    if not invoice.invoice_number:
        invoice.warnings.append("Numero documento assente")
    if not invoice.invoice_date:
        invoice.warnings.append("Data documento assente")


# ---------- Cedente / Cessionario ----------


def _parse_party(node, invoice: InvoiceDTO, role: str) -> None:
    """
    Estrae anagrafica, identificativi fiscali e sede di un soggetto.

    Nome visualizzato: Denominazione se presente, altrimenti "Nome Cognome".
    """
    if node is None:
        invoice.warnings.append(
            "CedentePrestatore assente" if role == "supplier" else "CessionarioCommittente assente"
        )
        return

    denominazione = _get_text(node, ".//Denominazione")
    if denominazione:
        name = denominazione
    else:
        nome = _get_text(node, ".//Nome")
        cognome = _get_text(node, ".//Cognome")
        name = " ".join(filter(None, [nome, cognome])).strip() or None

    sede = _first(node, ".//Sede")
    address = PartyAddressDTO(
        street=_get_text(sede, "./Indirizzo"),
        number=_get_text(sede, "./NumeroCivico"),
        postal_code=_get_text(sede, "./CAP"),
        city=_get_text(sede, "./Comune"),
        province=_get_text(sede, "./Provincia"),
        country=_get_text(sede, "./Nazione"),
    )
    vat = _get_text(node, ".//IdFiscaleIVA/IdCodice")

    if role == "supplier":
        invoice.supplier_name = name
        invoice.supplier_vat = vat
        invoice.supplier_fiscal_code = _get_text(node, ".//CodiceFiscale")
        invoice.supplier_address = address
    else:
        invoice.customer_name = name
        invoice.customer_vat = vat
        invoice.customer_address = address


# ---------- DettaglioLinee ----------


def _parse_line_items(body) -> List[LineItemDTO]:
    """Una riga per ogni DettaglioLinee, nell'ordine del documento."""
    items: List[LineItemDTO] = []

    for ln_node in body.xpath("./DatiBeniServizi/DettaglioLinee"):
        quantity_text = _get_text(ln_node, "./Quantita")
        total = _to_decimal(_get_text(ln_node, "./PrezzoTotale"))

        items.append(
            LineItemDTO(
                number=_to_int(_get_text(ln_node, "./NumeroLinea")),
                code=_get_text(ln_node, "./CodiceArticolo/CodiceValore"),
                description=_get_text(ln_node, "./Descrizione"),
                quantity=_to_decimal(quantity_text, Decimal("1")),
                unit_price=_to_decimal(_get_text(ln_node, "./PrezzoUnitario")),
                discount_percent=_to_decimal(
                    _get_text(ln_node, "./ScontoMaggiorazione/Percentuale")
                ),
                vat_percent=_to_decimal(_get_text(ln_node, "./AliquotaIVA")),
                total=total,
                has_quantity=_first(ln_node, "./Quantita") is not None,
                has_explicit_total=total != ZERO,
            )
        )

    return items


# ---------- DatiRiepilogo ----------


def _parse_vat_summaries(body, invoice: InvoiceDTO) -> None:
    """Imponibile e imposta sono la somma di tutte le righe DatiRiepilogo."""
    summaries: List[VatSummaryDTO] = []
    for s_node in body.xpath("./DatiBeniServizi/DatiRiepilogo"):
        summaries.append(
            VatSummaryDTO(
                vat_rate=_to_decimal(_get_text(s_node, "./AliquotaIVA")),
                taxable_amount=_to_decimal(_get_text(s_node, "./ImponibileImporto")),
                vat_amount=_to_decimal(_get_text(s_node, "./Imposta")),
                vat_nature=_get_text(s_node, "./Natura"),
            )
        )
        if invoice.vat_collectability is None:
            invoice.vat_collectability = _get_text(s_node, "./EsigibilitaIVA")

    invoice.vat_summaries = summaries
    invoice.taxable_amount = sum((s.taxable_amount for s in summaries), ZERO)
    invoice.tax_amount = sum((s.vat_amount for s in summaries), ZERO)


# ---------- DatiPagamento ----------


def _parse_payments(body, invoice: InvoiceDTO) -> None:
    """Tutte le rate DettaglioPagamento; metodo e scadenza principali = prima rata."""
    details: List[PaymentDetailDTO] = []
    for p_node in body.xpath("./DatiPagamento/DettaglioPagamento"):
        details.append(
            PaymentDetailDTO(
                method=_get_text(p_node, "./ModalitaPagamento"),
                due_date=_get_text(p_node, "./DataScadenzaPagamento"),
                amount=_to_decimal(_get_text(p_node, "./ImportoPagamento")),
            )
        )

    invoice.payment_details = details
    if details:
        invoice.payment_method = details[0].method
        invoice.payment_due_date = details[0].due_date


# ---------- Fattura semplificata ----------


def _parse_simplified_goods(body, invoice: InvoiceDTO) -> None:
    """
    Nella fattura semplificata ogni DatiBeniServizi riporta un importo IVA inclusa
    (Importo) e i DatiIVA (Imposta o Aliquota): non esistono righe di dettaglio
    né riepiloghi, quindi vengono ricostruiti qui.
    """
    items: List[LineItemDTO] = []
    summaries: List[VatSummaryDTO] = []

    for index, node in enumerate(body.xpath("./DatiBeniServizi"), start=1):
        amount = _to_decimal(_get_text(node, "./Importo"))
        tax = _to_decimal(_get_text(node, "./DatiIVA/Imposta"))
        rate = _to_decimal(_get_text(node, "./DatiIVA/Aliquota"))

        items.append(
            LineItemDTO(
                number=index,
                description=_get_text(node, "./Descrizione"),
                unit_price=amount,
                vat_percent=rate,
                total=amount,
                has_quantity=False,
                has_explicit_total=amount != ZERO,
            )
        )
        summaries.append(
            VatSummaryDTO(
                vat_rate=rate,
                taxable_amount=amount - tax,
                vat_amount=tax,
                vat_nature=_get_text(node, "./Natura"),
            )
        )

    invoice.line_items = items
    invoice.vat_summaries = summaries
    invoice.tax_amount = sum((s.vat_amount for s in summaries), ZERO)
    invoice.taxable_amount = sum((s.taxable_amount for s in summaries), ZERO)
    if invoice.total_amount == ZERO:
        invoice.total_amount = sum((i.total for i in items), ZERO)


def _check_totals(invoice: InvoiceDTO) -> None:
    """Il totale dichiarato viene mantenuto: una discrepanza produce solo un warning."""
    if not invoice.vat_summaries or invoice.total_amount == ZERO:
        return
    expected = invoice.taxable_amount + invoice.tax_amount
    if abs(invoice.total_amount - expected) > TOTAL_TOLERANCE:
        invoice.warnings.append(
            f"Totale documento {invoice.total_amount} diverso da imponibile + imposta ({expected})"
        )
