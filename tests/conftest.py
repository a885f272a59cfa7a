"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator, List, Optional

import pytest
from flask import Flask

from config import TestConfig
from fatture import create_app
from fatture.errors import RenderError
from fatture.extensions import INGESTION_EXTENSION_KEY, db
from fatture.services.ingestion_service import IngestionOrchestrator, RawUpload

import fatture.models  # noqa: F401

NS_V12 = "http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.2"
NS_V11 = "http://www.fatturapa.gov.it/sdi/fatturapa/v1.1"
NS_SIMPLIFIED = "http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.0"

DEFAULT_LINES = [
    {
        "number": 1,
        "description": "Consulenza informatica",
        "quantity": "1.00",
        "unit_price": "1000.00",
        "total": "1000.00",
        "vat": "22.00",
    }
]


class FakePdfBackend:
    """Stand-in for the WeasyPrint backend: records calls, can be told to fail."""

    def __init__(self) -> None:
        self.calls = 0
        self.fail = False

    def render_pdf(self, html_content: str) -> bytes:
        self.calls += 1
        if self.fail:
            raise RenderError("Generazione PDF fallita: backend non disponibile")
        return b"%PDF-1.4\n% fake\n" + str(len(html_content)).encode("ascii")

    def is_healthy(self) -> bool:
        return not self.fail

    def shutdown(self) -> None:
        pass


def build_invoice_xml(
    *,
    number: str = "001",
    invoice_date: str = "2024-01-15",
    document_type: str = "TD01",
    supplier_vat: Optional[str] = "01234567890",
    supplier_fiscal_code: Optional[str] = None,
    supplier_name: Optional[str] = "Fornitore Srl",
    supplier_person: Optional[tuple] = None,
    customer_name: str = "Cliente Spa",
    customer_vat: str = "09876543210",
    total: Optional[str] = "1220.00",
    summaries: Optional[List[tuple]] = None,
    lines: Optional[List[dict]] = None,
    payments: Optional[List[tuple]] = None,
    namespace: Optional[str] = NS_V12,
    prefix: Optional[str] = "p",
    declaration: bool = True,
) -> str:
    """FatturaPA document in the shape issued by the SdI (only the root is namespaced)."""
    lines = DEFAULT_LINES if lines is None else lines
    summaries = [("22.00", "1000.00", "220.00", "I")] if summaries is None else summaries
    payments = [("MP05", "2024-02-15", "1220.00")] if payments is None else payments

    if namespace and prefix:
        root_open = f'<{prefix}:FatturaElettronica versione="FPR12" xmlns:{prefix}="{namespace}">'
        root_close = f"</{prefix}:FatturaElettronica>"
    elif namespace:
        root_open = f'<FatturaElettronica versione="FPR12" xmlns="{namespace}">'
        root_close = "</FatturaElettronica>"
    else:
        root_open = '<FatturaElettronica versione="FPR12">'
        root_close = "</FatturaElettronica>"

    supplier_ids = ""
    if supplier_vat:
        supplier_ids += f"<IdFiscaleIVA><IdPaese>IT</IdPaese><IdCodice>{supplier_vat}</IdCodice></IdFiscaleIVA>"
    if supplier_fiscal_code:
        supplier_ids += f"<CodiceFiscale>{supplier_fiscal_code}</CodiceFiscale>"
    if supplier_person:
        supplier_registry = f"<Nome>{supplier_person[0]}</Nome><Cognome>{supplier_person[1]}</Cognome>"
    else:
        supplier_registry = f"<Denominazione>{supplier_name}</Denominazione>"

    line_xml = ""
    for line in lines:
        quantity = line.get("quantity")
        line_xml += (
            "<DettaglioLinee>"
            f"<NumeroLinea>{line['number']}</NumeroLinea>"
            + (
                f"<CodiceArticolo><CodiceTipo>INT</CodiceTipo><CodiceValore>{line['code']}</CodiceValore></CodiceArticolo>"
                if line.get("code")
                else ""
            )
            + f"<Descrizione>{line['description']}</Descrizione>"
            + (f"<Quantita>{quantity}</Quantita>" if quantity is not None else "")
            + f"<PrezzoUnitario>{line['unit_price']}</PrezzoUnitario>"
            + (
                f"<ScontoMaggiorazione><Tipo>SC</Tipo><Percentuale>{line['discount']}</Percentuale></ScontoMaggiorazione>"
                if line.get("discount")
                else ""
            )
            + f"<PrezzoTotale>{line['total']}</PrezzoTotale>"
            f"<AliquotaIVA>{line['vat']}</AliquotaIVA>"
            "</DettaglioLinee>"
        )

    summary_xml = "".join(
        "<DatiRiepilogo>"
        f"<AliquotaIVA>{rate}</AliquotaIVA>"
        f"<ImponibileImporto>{taxable}</ImponibileImporto>"
        f"<Imposta>{tax}</Imposta>"
        f"<EsigibilitaIVA>{collectability}</EsigibilitaIVA>"
        "</DatiRiepilogo>"
        for rate, taxable, tax, collectability in summaries
    )

    payment_xml = ""
    if payments:
        payment_xml = "<DatiPagamento><CondizioniPagamento>TP02</CondizioniPagamento>" + "".join(
            "<DettaglioPagamento>"
            f"<ModalitaPagamento>{method}</ModalitaPagamento>"
            f"<DataScadenzaPagamento>{due}</DataScadenzaPagamento>"
            f"<ImportoPagamento>{amount}</ImportoPagamento>"
            "</DettaglioPagamento>"
            for method, due, amount in payments
        ) + "</DatiPagamento>"

    total_xml = f"<ImportoTotaleDocumento>{total}</ImportoTotaleDocumento>" if total is not None else ""

    return (
        ('<?xml version="1.0" encoding="UTF-8"?>\n' if declaration else "")
        + root_open
        + "<FatturaElettronicaHeader>"
        "<DatiTrasmissione><ProgressivoInvio>00001</ProgressivoInvio><FormatoTrasmissione>FPR12</FormatoTrasmissione></DatiTrasmissione>"
        "<CedentePrestatore>"
        f"<DatiAnagrafici>{supplier_ids}<Anagrafica>{supplier_registry}</Anagrafica><RegimeFiscale>RF01</RegimeFiscale></DatiAnagrafici>"
        "<Sede><Indirizzo>Via Roma</Indirizzo><NumeroCivico>1</NumeroCivico><CAP>00100</CAP><Comune>Roma</Comune><Provincia>RM</Provincia><Nazione>IT</Nazione></Sede>"
        "</CedentePrestatore>"
        "<CessionarioCommittente>"
        f"<DatiAnagrafici><IdFiscaleIVA><IdPaese>IT</IdPaese><IdCodice>{customer_vat}</IdCodice></IdFiscaleIVA><Anagrafica><Denominazione>{customer_name}</Denominazione></Anagrafica></DatiAnagrafici>"
        "<Sede><Indirizzo>Corso Milano</Indirizzo><CAP>20100</CAP><Comune>Milano</Comune><Provincia>MI</Provincia><Nazione>IT</Nazione></Sede>"
        "</CessionarioCommittente>"
        "</FatturaElettronicaHeader>"
        "<FatturaElettronicaBody>"
        "<DatiGenerali><DatiGeneraliDocumento>"
        f"<TipoDocumento>{document_type}</TipoDocumento><Divisa>EUR</Divisa><Data>{invoice_date}</Data><Numero>{number}</Numero>"
        f"{total_xml}"
        "</DatiGeneraliDocumento></DatiGenerali>"
        f"<DatiBeniServizi>{line_xml}{summary_xml}</DatiBeniServizi>"
        f"{payment_xml}"
        "</FatturaElettronicaBody>"
        + root_close
    )


SIMPLIFIED_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    f'<p:FatturaElettronicaSemplificata versione="FSM10" xmlns:p="{NS_SIMPLIFIED}">'
    "<FatturaElettronicaHeader>"
    "<DatiTrasmissione><ProgressivoInvio>00002</ProgressivoInvio><FormatoTrasmissione>FSM10</FormatoTrasmissione></DatiTrasmissione>"
    "<CedentePrestatore>"
    "<IdFiscaleIVA><IdPaese>IT</IdPaese><IdCodice>11122233344</IdCodice></IdFiscaleIVA>"
    "<Denominazione>Bar Centrale</Denominazione>"
    "<Sede><Indirizzo>Piazza Duomo</Indirizzo><CAP>50100</CAP><Comune>Firenze</Comune><Nazione>IT</Nazione></Sede>"
    "<RegimeFiscale>RF01</RegimeFiscale>"
    "</CedentePrestatore>"
    "<CessionarioCommittente>"
    "<IdentificativiFiscali><CodiceFiscale>RSSMRA80A01H501U</CodiceFiscale></IdentificativiFiscali>"
    "<AltriDatiIdentificativi><Nome>Mario</Nome><Cognome>Rossi</Cognome></AltriDatiIdentificativi>"
    "</CessionarioCommittente>"
    "</FatturaElettronicaHeader>"
    "<FatturaElettronicaBody>"
    "<DatiGenerali><DatiGeneraliDocumento>"
    "<TipoDocumento>TD07</TipoDocumento><Divisa>EUR</Divisa><Data>2024-03-01</Data><Numero>S-12</Numero>"
    "</DatiGeneraliDocumento></DatiGenerali>"
    "<DatiBeniServizi><Descrizione>Servizio catering</Descrizione><Importo>122.00</Importo>"
    "<DatiIVA><Imposta>22.00</Imposta></DatiIVA></DatiBeniServizi>"
    "</FatturaElettronicaBody>"
    "</p:FatturaElettronicaSemplificata>"
)


@pytest.fixture
def invoice_xml() -> Callable[..., str]:
    """Provide the FatturaPA XML builder."""
    return build_invoice_xml


@pytest.fixture
def simplified_xml() -> str:
    return SIMPLIFIED_XML


@pytest.fixture
def app(tmp_path: Path) -> Iterator[Flask]:
    """Application bound to a temporary SQLite file and storage root."""

    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'fatture.db'}"
        STORAGE_DIR = str(tmp_path / "storage")
        LOG_DIR = str(tmp_path / "logs")

    application = create_app(_Config)
    orchestrator: IngestionOrchestrator = application.extensions[INGESTION_EXTENSION_KEY]
    orchestrator.pdf_backend = FakePdfBackend()

    with application.app_context():
        db.create_all()

    yield application

    orchestrator.broadcaster.shutdown()
    with application.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def orchestrator(app: Flask) -> IngestionOrchestrator:
    return app.extensions[INGESTION_EXTENSION_KEY]


@pytest.fixture
def pdf_backend(orchestrator: IngestionOrchestrator) -> FakePdfBackend:
    return orchestrator.pdf_backend


@pytest.fixture
def client(app: Flask):
    return app.test_client()


@pytest.fixture
def make_upload(invoice_xml: Callable[..., str]) -> Callable[..., RawUpload]:
    """Build a RawUpload for a plain XML invoice."""

    def _make(filename: str = "IT01234567890_00001.xml", **kwargs) -> RawUpload:
        return RawUpload.from_bytes(filename, invoice_xml(**kwargs).encode("utf-8"))

    return _make
