"""
Rendering degli artefatti leggibili: HTML (template Jinja2) e PDF (WeasyPrint).

- ``render_html(invoice)`` produce il documento HTML a partire dall'``InvoiceDTO``
- ``PdfRenderBackend.render_pdf(html)`` converte l'HTML in PDF rispettando le
  regole CSS di impaginazione (``page-break-inside: avoid`` su tabelle e righe chiave)

La sessione WeasyPrint (configurazione font condivisa) è una risorsa riusata tra i
file: viene creata al primo uso, controllata prima di ogni render e ricreata se
un render fallisce o va in timeout.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from fatture.errors import RenderError
from fatture.parsers.fatturapa_parser import InvoiceDTO, PartyAddressDTO
from fatture.web.template_filters import register_template_filters

logger = logging.getLogger(__name__)

INVOICE_TEMPLATE = "invoices/fattura.html"

# Decodifiche da FoglioStileAssoSoftware.xsl
DOCUMENT_TYPES = {
    "TD01": "Fattura",
    "TD02": "Acconto/Anticipo su fattura",
    "TD03": "Acconto/Anticipo su parcella",
    "TD04": "Nota di credito",
    "TD05": "Nota di debito",
    "TD06": "Parcella",
    "TD07": "Fattura semplificata",
    "TD08": "Nota di credito semplificata",
    "TD09": "Nota di debito semplificata",
    "TD10": "Fattura per autoconsumo o per cessioni gratuite",
    "TD11": "Fattura reverse charge interno",
    "TD12": "Documento riepilogativo",
    "TD13": "Integrazione/autofattura",
    "TD14": "Autofattura per acquisto extra UE di servizi",
    "TD15": "Integrazione per acquisto intracomunitario di beni",
    "TD16": "Integrazione fattura reverse charge interno",
    "TD17": "Integrazione/autofattura per acquisto servizi dall'estero",
    "TD18": "Integrazione per acquisto di beni intracomunitari",
    "TD19": "Integrazione/autofattura per acquisto di beni ex art.17 c.2",
    "TD20": "Autofattura per regolarizzazione e integrazione",
    "TD21": "Autofattura per splafonamento",
    "TD22": "Estrazione beni da Deposito IVA",
    "TD23": "Estrazione beni da Deposito IVA con versamento dell'IVA",
    "TD24": "Fattura differita",
    "TD25": "Fattura differita per triangolazione",
    "TD26": "Cessione beni ammortizzabili e per passaggi interni",
    "TD27": "Fattura per autoconsumo o per cessioni gratuite",
    "TD28": "Nota di debito da autoconsumo",
    "TD29": "Nota di credito da autoconsumo",
}

PAYMENT_METHODS = {
    "MP01": "Contanti",
    "MP02": "Assegno",
    "MP03": "Assegno circolare",
    "MP04": "Contanti presso Tesoreria",
    "MP05": "Bonifico",
    "MP06": "Vaglia cambiario",
    "MP07": "Bollettino bancario",
    "MP08": "Carta di pagamento",
    "MP09": "RID",
    "MP10": "RID utenze",
    "MP11": "RID veloce",
    "MP12": "RIBA",
    "MP13": "MAV",
    "MP14": "Quietanza erario",
    "MP15": "Giroconto su conti di contabilità speciale",
    "MP16": "Domiciliazione bancaria",
    "MP17": "Domiciliazione postale",
    "MP18": "Bollettino di c/c postale",
    "MP19": "SEPA Direct Debit",
    "MP20": "SEPA Direct Debit CORE",
    "MP21": "SEPA Direct Debit B2B",
    "MP22": "Trattenuta su somme già riscosse",
    "MP23": "PagoPA",
}

VAT_COLLECTABILITY = {
    "I": "IVA a esigibilità immediata",
    "D": "IVA a esigibilità differita",
    "S": "Scissione dei pagamenti (split payment)",
}


def decode_document_type(code: Optional[str]) -> str:
    if not code:
        return "Documento"
    return f"{code} - {DOCUMENT_TYPES.get(code, 'Documento')}"


def decode_payment_method(code: Optional[str]) -> str:
    if not code:
        return "Non specificato"
    return f"{code} - {PAYMENT_METHODS.get(code, 'Non specificato')}"


def decode_vat_collectability(code: Optional[str]) -> str:
    if not code:
        return "-"
    return f"{code} - {VAT_COLLECTABILITY.get(code, '-')}"


def format_address(address: Optional[PartyAddressDTO]) -> str:
    """``Via Roma 1 00100 Roma (RM) IT``; stringa vuota se la sede è assente."""
    if address is None or address.is_empty():
        return ""
    parts = [
        address.street,
        address.number,
        address.postal_code,
        address.city,
        f"({address.province})" if address.province else None,
        address.country,
    ]
    return " ".join(p for p in parts if p)


# =========================
#  HTML
# =========================

_env: Optional[Environment] = None
_env_lock = threading.Lock()


def _get_environment() -> Environment:
    global _env
    with _env_lock:
        if _env is None:
            env = Environment(
                loader=PackageLoader("fatture", "templates"),
                autoescape=select_autoescape(["html", "xml"]),
                trim_blocks=True,
                lstrip_blocks=True,
            )
            register_template_filters(env)
            _env = env
        return _env


def render_html(invoice: InvoiceDTO) -> str:
    """Documento HTML della fattura, pronto per la visualizzazione e la stampa PDF."""
    try:
        template = _get_environment().get_template(INVOICE_TEMPLATE)
        return template.render(
            invoice=invoice,
            supplier_address=format_address(invoice.supplier_address),
            customer_address=format_address(invoice.customer_address),
            document_type_label=decode_document_type(invoice.document_type),
            vat_collectability_label=decode_vat_collectability(invoice.vat_collectability),
        )
    except Exception as exc:
        raise RenderError(f"Generazione HTML fallita: {exc}") from exc


# =========================
#  PDF
# =========================


def _create_font_config() -> Any:
    from weasyprint.text.fonts import FontConfiguration

    return FontConfiguration()


def _write_pdf(html_content: str, font_config: Any) -> bytes:
    """Convert HTML string to PDF bytes via weasyprint."""
    import weasyprint

    doc = weasyprint.HTML(string=html_content)
    return doc.write_pdf(font_config=font_config)


class _RenderSession:
    def __init__(self, font_config: Any):
        self.font_config = font_config
        self.renders = 0
        self.broken = False


class PdfRenderBackend:
    """
    Backend PDF riusabile e thread-safe.

    Ogni render gira su un thread dedicato con timeout: un documento che blocca
    WeasyPrint fa fallire solo il proprio file. Dopo un errore la sessione
    corrente viene scartata e la successiva richiesta ne crea una nuova; i render
    concorrenti già avviati su un'altra sessione non vengono toccati.

    Un render in timeout resta bloccato sul suo thread: il pool viene quindi
    sostituito e i render ancora in coda vengono rimandati sul pool nuovo.
    """

    def __init__(self, timeout: float = 30.0, max_renders: int = 200, max_workers: int = 4):
        self.timeout = timeout
        self.max_renders = max_renders
        self._lock = threading.Lock()
        self._session: Optional[_RenderSession] = None
        self.max_workers = max_workers
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pdf-render")

    def is_healthy(self) -> bool:
        with self._lock:
            return self._session_usable(self._session)

    def _session_usable(self, session: Optional[_RenderSession]) -> bool:
        return session is not None and not session.broken and session.renders < self.max_renders

    def _acquire_session(self) -> _RenderSession:
        with self._lock:
            if not self._session_usable(self._session):
                if self._session is not None:
                    logger.info(
                        "Sessione PDF ricreata",
                        extra={
                            "component": "render_service",
                            "renders": self._session.renders,
                            "broken": self._session.broken,
                        },
                    )
                self._session = _RenderSession(_create_font_config())
            self._session.renders += 1
            return self._session

    def _discard_session(self, session: _RenderSession) -> None:
        with self._lock:
            session.broken = True
            if self._session is session:
                self._session = None

    def render_pdf(self, html_content: str) -> bytes:
        """:raises RenderError: errore del backend o timeout"""
        try:
            session = self._acquire_session()
        except Exception as exc:
            raise RenderError(f"Backend PDF non disponibile: {exc}") from exc

        for _attempt in range(2):
            with self._lock:
                executor = self._executor
            try:
                future = executor.submit(_write_pdf, html_content, session.font_config)
            except RuntimeError:
                # pool appena sostituito da un altro thread
                continue
            try:
                pdf_bytes = future.result(timeout=self.timeout)
                break
            except CancelledError:
                continue
            except FutureTimeoutError as exc:
                future.cancel()
                self._discard_session(session)
                self._replace_executor(executor)
                raise RenderError(f"Timeout generazione PDF ({self.timeout:g}s)") from exc
            except Exception as exc:
                self._discard_session(session)
                raise RenderError(f"Generazione PDF fallita: {exc}") from exc
        else:
            raise RenderError("Generazione PDF annullata: pool di rendering sostituito")

        if not pdf_bytes:
            self._discard_session(session)
            raise RenderError("Generazione PDF fallita: output vuoto")
        return pdf_bytes

    def _replace_executor(self, stuck: ThreadPoolExecutor) -> None:
        with self._lock:
            if self._executor is not stuck:
                return
            self._executor = self._new_executor()
        logger.warning(
            "Pool di rendering PDF sostituito dopo un timeout",
            extra={"component": "render_service", "timeout": self.timeout},
        )
        stuck.shutdown(wait=False, cancel_futures=True)

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
        executor.shutdown(wait=False, cancel_futures=True)
