"""
Pipeline di import delle fatture (XML / P7M).

Per ogni file, in ordine stretto:
    pending -> extracting -> parsing -> dedup-checking -> writing-artifacts
            -> creating-record -> done    (oppure failed, da qualsiasi fase)

I file di un batch sono elaborati in parallelo (ThreadPoolExecutor); l'errore di
un file non interrompe gli altri e viene riportato come
``{filename, error, code}``. Lo stato del batch è pubblicato tramite
``ProgressBroadcaster``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from flask import Flask, current_app
from sqlalchemy.exc import SQLAlchemyError

from fatture.errors import (
    BatchSubmissionError,
    DuplicateInvoiceError,
    IngestionError,
    PersistenceError,
)
from fatture.parsers.fatturapa_parser import InvoiceDTO, parse_invoice
from fatture.parsers.p7m_extractor import extract_xml
from fatture.services.artifact_store import ArtifactStore
from fatture.services.duplicate_service import business_key, find_duplicate
from fatture.services.logging import log_structured_event
from fatture.services.naming_service import artifact_filenames, derive_base_name
from fatture.services.progress_service import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    ProgressBroadcaster,
    UploadJob,
)
from fatture.services.render_service import PdfRenderBackend, render_html
from fatture.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = ("xml", "p7m")

STAGE_PENDING = "pending"
STAGE_EXTRACTING = "extracting"
STAGE_PARSING = "parsing"
STAGE_DEDUP = "dedup-checking"
STAGE_WRITING = "writing-artifacts"
STAGE_RECORD = "creating-record"
STAGE_DONE = "done"
STAGE_FAILED = "failed"


def detect_extension(filename: str) -> str:
    """``fattura.xml.p7m`` -> ``p7m``; ``FATTURA.XML`` -> ``xml``."""
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return suffix


@dataclass
class RawUpload:
    """File ricevuto (upload HTTP o cartella di import); non viene mai persistito."""

    filename: str
    buffer: bytes
    extension: str

    @classmethod
    def from_bytes(cls, filename: str, buffer: bytes) -> "RawUpload":
        return cls(filename=filename, buffer=buffer, extension=detect_extension(filename))

    @property
    def size(self) -> int:
        return len(self.buffer)


@dataclass
class FileOutcome:
    filename: str
    stage: str
    record: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.stage == STAGE_DONE


def error_entry(filename: str, exc: Exception) -> Dict[str, Any]:
    entry = {
        "filename": filename,
        "error": str(exc) or exc.__class__.__name__,
        "code": getattr(exc, "code", None),
    }
    if isinstance(exc, DuplicateInvoiceError):
        entry["details"] = exc.context()
    return entry


def invoice_record_fields(
    invoice: InvoiceDTO, upload: RawUpload, filenames: Dict[str, str]
) -> Dict[str, Any]:
    """Campi del record ``Invoice`` ricavati dalla fattura canonica."""
    return {
        "filename": upload.filename,
        "original_format": "p7m" if upload.extension == "p7m" else "xml",
        "invoice_number": invoice.invoice_number,
        "invoice_date": invoice.invoice_date,
        "document_type": invoice.document_type,
        "currency": invoice.currency,
        "supplier_name": invoice.supplier_name,
        "supplier_vat": invoice.supplier_vat,
        "supplier_fiscal_code": invoice.supplier_fiscal_code,
        "supplier_address": None if invoice.supplier_address.is_empty() else invoice.supplier_address.to_dict(),
        "customer_name": invoice.customer_name,
        "customer_vat": invoice.customer_vat,
        "customer_address": None if invoice.customer_address.is_empty() else invoice.customer_address.to_dict(),
        "taxable_amount": invoice.taxable_amount,
        "tax_amount": invoice.tax_amount,
        "total_amount": invoice.total_amount,
        "payment_method": invoice.payment_method,
        "payment_due_date": invoice.payment_due_date,
        "payment_details": [p.to_dict() for p in invoice.payment_details],
        "line_items": [item.to_dict() for item in invoice.line_items],
        "status": "not_printed",
        "marked": False,
        "notes": None,
        "tags": [],
        "xml_path": filenames["xml"],
        "html_path": filenames["html"],
        "pdf_path": filenames["pdf"],
    }


class IngestionOrchestrator:
    def __init__(
        self,
        app: Flask,
        artifact_store: ArtifactStore,
        pdf_backend: PdfRenderBackend,
        broadcaster: ProgressBroadcaster,
        *,
        max_workers: int = 4,
        max_files: int = 10,
        max_file_size: int = 10 * 1024 * 1024,
        openssl_bin: Optional[str] = None,
    ):
        self.app = app
        self.artifact_store = artifact_store
        self.pdf_backend = pdf_backend
        self.broadcaster = broadcaster
        self.max_workers = max(1, max_workers)
        self.max_files = max_files
        self.max_file_size = max_file_size
        self.openssl_bin = openssl_bin

        # Fatture in lavorazione (chiave -> campi identificativi), protette da _claims_lock
        self._claims_lock = threading.Lock()
        self._in_flight: Dict[tuple, Dict[str, Any]] = {}

    # =========================
    #  Batch
    # =========================

    def validate_batch(self, uploads: Sequence[RawUpload]) -> None:
        """:raises BatchSubmissionError: batch rifiutato prima di creare il job"""
        if not uploads:
            raise BatchSubmissionError("Nessun file caricato")
        if len(uploads) > self.max_files:
            raise BatchSubmissionError(
                f"Troppi file: massimo {self.max_files} per caricamento",
                files=[u.filename for u in uploads],
            )
        oversized = [u.filename for u in uploads if u.size > self.max_file_size]
        if oversized:
            raise BatchSubmissionError("File troppo grandi", files=oversized)
        unsupported = [u.filename for u in uploads if u.extension not in ALLOWED_EXTENSIONS]
        if unsupported:
            raise BatchSubmissionError(
                "Formato non supportato: sono ammessi solo file .xml e .p7m",
                files=unsupported,
            )

    def submit_batch(self, uploads: Sequence[RawUpload]) -> str:
        """Valida il batch, crea il job e avvia l'elaborazione in background."""
        uploads = list(uploads)
        self.validate_batch(uploads)
        job = self.broadcaster.create_job(total=len(uploads))
        self.broadcaster.emit(job.job_id)

        thread = threading.Thread(
            target=self._run_batch_safely,
            args=(job.job_id, uploads),
            name=f"ingestion-{job.job_id[:8]}",
            daemon=True,
        )
        thread.start()

        log_structured_event(
            "upload_batch_submitted",
            message="Batch di import avviato",
            job_id=job.job_id,
            files=len(uploads),
        )
        return job.job_id

    def ingest_batch(self, uploads: Sequence[RawUpload]) -> Dict[str, Any]:
        """Variante sincrona di ``submit_batch``: restituisce lo snapshot terminale."""
        uploads = list(uploads)
        self.validate_batch(uploads)
        job = self.broadcaster.create_job(total=len(uploads))
        return self.run_batch(job.job_id, uploads)

    def _run_batch_safely(self, job_id: str, uploads: List[RawUpload]) -> None:
        try:
            self.run_batch(job_id, uploads)
        except Exception:
            logger.exception(
                "Errore inatteso nel batch di import",
                extra={"component": "ingestion", "job_id": job_id},
            )

    def run_batch(self, job_id: str, uploads: List[RawUpload]) -> Dict[str, Any]:
        """
        Elabora tutti i file in parallelo. I risultati di ogni file restano
        indipendenti e vengono uniti solo a fine batch.
        """
        state = UploadJob(job_id=job_id, total=len(uploads), status=STATUS_PROCESSING)
        state_lock = threading.Lock()
        outcomes: List[Optional[FileOutcome]] = [None] * len(uploads)

        def publish() -> Dict[str, Any]:
            return self.broadcaster.emit(
                job_id,
                dataclasses.replace(state, results=list(state.results), errors=list(state.errors)),
            )

        def work(index: int, upload: RawUpload) -> None:
            with state_lock:
                state.current_file = upload.filename
                publish()

            with self.app.app_context():
                outcome = self.process_file(upload)
            outcomes[index] = outcome

            with state_lock:
                if outcome.ok:
                    state.completed += 1
                else:
                    state.failed += 1
                publish()

        with state_lock:
            publish()

        try:
            workers = min(self.max_workers, len(uploads)) or 1
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"ingest-{job_id[:8]}") as pool:
                futures = [pool.submit(work, i, u) for i, u in enumerate(uploads)]
                for future in futures:
                    future.result()
        finally:
            with state_lock:
                for upload, outcome in zip(uploads, outcomes):
                    if outcome is None:
                        state.failed += 1
                        state.errors.append(
                            {"filename": upload.filename, "error": "Elaborazione interrotta", "code": None}
                        )
                    elif outcome.ok:
                        state.results.append(outcome.record)
                    else:
                        state.errors.append(outcome.error)
                state.current_file = None
                state.status = STATUS_COMPLETED if state.results else STATUS_FAILED
                snapshot = publish()

        log_structured_event(
            "upload_batch_finished",
            message="Batch di import concluso",
            job_id=job_id,
            status=snapshot["status"],
            imported=len(snapshot["results"]),
            failed=len(snapshot["errors"]),
        )
        return snapshot

    # =========================
    #  Singolo file
    # =========================

    def process_file(self, upload: RawUpload) -> FileOutcome:
        """
        Esegue la pipeline su un file. Richiede un app context attivo.

        Ogni errore viene convertito in ``FileOutcome`` con stato ``failed``.
        """
        stage = STAGE_PENDING
        claim: Optional[tuple] = None
        try:
            stage = STAGE_EXTRACTING
            xml_text = extract_xml(upload.buffer, upload.extension, openssl_bin=self.openssl_bin)

            stage = STAGE_PARSING
            invoice = parse_invoice(xml_text)

            stage = STAGE_DEDUP
            claim = self._claim(invoice, upload.filename)

            stage = STAGE_WRITING
            filenames = self._write_artifacts(invoice, xml_text)

            stage = STAGE_RECORD
            record = self._create_record(invoice, upload, filenames)

            log_structured_event(
                "invoice_imported",
                message="Fattura importata",
                file_name=upload.filename,
                invoice_id=record["id"],
                invoice_number=invoice.invoice_number,
                invoice_date=invoice.invoice_date,
            )
            return FileOutcome(filename=upload.filename, stage=STAGE_DONE, record=record)

        except IngestionError as exc:
            log_level = logging.INFO if isinstance(exc, DuplicateInvoiceError) else logging.WARNING
            logger.log(
                log_level,
                "Import file fallito",
                extra={
                    "component": "ingestion",
                    "file_name": upload.filename,
                    "stage": stage,
                    "error": str(exc),
                    "code": exc.code,
                },
            )
            return FileOutcome(
                filename=upload.filename,
                stage=STAGE_FAILED,
                error=error_entry(upload.filename, exc),
                failed_stage=stage,
            )
        except Exception as exc:
            logger.exception(
                "Errore inatteso durante l'import",
                extra={"component": "ingestion", "file_name": upload.filename, "stage": stage},
            )
            return FileOutcome(
                filename=upload.filename,
                stage=STAGE_FAILED,
                error=error_entry(upload.filename, exc),
                failed_stage=stage,
            )
        finally:
            if claim is not None:
                self._release(claim)

    def _claim(self, invoice: InvoiceDTO, filename: str) -> tuple:
        """
        Controllo duplicati contro i record esistenti e le fatture in lavorazione.
        Se la fattura è nuova la chiave viene riservata fino a fine pipeline.

        :raises DuplicateInvoiceError:
        """
        key = business_key(invoice)
        with self._claims_lock:
            with UnitOfWork() as uow:
                candidates = uow.invoices.find_by_business_key(invoice.invoice_number, invoice.invoice_date)
                existing = find_duplicate(invoice, candidates)
                existing_id = existing.id if existing is not None else None
            if existing is None:
                existing = find_duplicate(invoice, self._in_flight.values())

            if existing is not None:
                raise DuplicateInvoiceError(
                    filename,
                    invoice.invoice_number,
                    invoice.invoice_date,
                    supplier_vat=invoice.supplier_vat,
                    supplier_fiscal_code=invoice.supplier_fiscal_code,
                    existing_id=existing_id,
                )

            self._in_flight[key] = {
                "invoice_number": invoice.invoice_number,
                "invoice_date": invoice.invoice_date,
                "supplier_vat": invoice.supplier_vat,
                "supplier_fiscal_code": invoice.supplier_fiscal_code,
            }
        return key

    def _release(self, key: tuple) -> None:
        with self._claims_lock:
            self._in_flight.pop(key, None)

    def _write_artifacts(self, invoice: InvoiceDTO, xml_text: str) -> Dict[str, str]:
        """
        Scrive XML, HTML e PDF sotto il nome stabile, ciascuno solo se assente.
        Un retry dopo un errore rigenera solo gli artefatti mancanti.
        """
        filenames = artifact_filenames(derive_base_name(invoice.invoice_number, invoice.invoice_date))
        store = self.artifact_store
        try:
            store.write_if_absent("xml", filenames["xml"], xml_text.encode("utf-8"))

            html_content: Optional[str] = None
            if not store.exists("html", filenames["html"]):
                html_content = render_html(invoice)
                store.write("html", filenames["html"], html_content.encode("utf-8"))

            if not store.exists("pdf", filenames["pdf"]):
                if html_content is None:
                    html_content = store.read("html", filenames["html"]).decode("utf-8")
                pdf_bytes = self.pdf_backend.render_pdf(html_content)
                store.write("pdf", filenames["pdf"], pdf_bytes)
        except OSError as exc:
            raise PersistenceError(f"Scrittura artefatti fallita: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise PersistenceError(f"HTML esistente non leggibile: {exc}") from exc
        return filenames

    def _create_record(
        self, invoice: InvoiceDTO, upload: RawUpload, filenames: Dict[str, str]
    ) -> Dict[str, Any]:
        data = invoice_record_fields(invoice, upload, filenames)
        try:
            with UnitOfWork() as uow:
                record = uow.invoices.create(data)
                uow.commit()
                return record.to_dict()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Salvataggio fattura fallito: {exc}") from exc


# =========================
#  Cartella di import
# =========================


def collect_uploads_from_folder(folder: str | os.PathLike) -> List[RawUpload]:
    """
    Legge i file ``.xml`` / ``.p7m`` di una cartella.

    I file di metadati SdI (``*_metadato*``) vengono ignorati; se lo stesso
    documento è presente sia come ``.xml`` sia come ``.xml.p7m`` si usa l'XML.
    """
    root = Path(folder)
    if not root.is_dir():
        raise BatchSubmissionError(f"Cartella non trovata: {root}")

    by_document: Dict[str, Path] = {}
    for path in sorted(root.iterdir()):
        if not path.is_file():
            continue
        name = path.name
        lower = name.lower()
        if "_metadato" in lower:
            continue
        extension = detect_extension(name)
        if extension not in ALLOWED_EXTENSIONS:
            continue

        document_key = lower[: -len(".p7m")] if extension == "p7m" else lower
        if not document_key.endswith(".xml"):
            document_key += ".xml"
        current = by_document.get(document_key)
        if current is None or (extension == "xml" and detect_extension(current.name) == "p7m"):
            by_document[document_key] = path

    return [RawUpload.from_bytes(p.name, p.read_bytes()) for p in by_document.values()]


def uploads_from_files(files: Iterable[Any]) -> List[RawUpload]:
    """Converte i ``FileStorage`` di werkzeug di una richiesta multipart in ``RawUpload``."""
    uploads: List[RawUpload] = []
    for storage in files:
        if storage is None or not storage.filename:
            continue
        uploads.append(RawUpload.from_bytes(storage.filename, storage.read()))
    return uploads


def get_ingestion_orchestrator(app: Optional[Flask] = None) -> IngestionOrchestrator:
    target = app or current_app
    return target.extensions["fatture.ingestion"]
