"""
Servizi per la gestione delle fatture importate.

Funzioni principali:
- list_invoices(...)              -> elenco filtrato e paginato
- update_invoice / toggle_marked  -> stato, flag, note, tag
- delete_invoice_with_files(...)  -> record + terna di artefatti come un'unica unità
- batch_*                         -> operazioni multiple con esito per id
- get_artifact(...)               -> XML/HTML/PDF (PDF rigenerato se mancante)
- build_zip(...) / get_stats()
"""

from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fatture.errors import IngestionError, RenderError
from fatture.models.invoice import VALID_STATUSES, normalize_status
from fatture.parsers.fatturapa_parser import parse_invoice
from fatture.services.ingestion_service import get_ingestion_orchestrator
from fatture.services.logging import log_structured_event
from fatture.services.render_service import render_html
from fatture.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

ARTIFACT_MIMETYPES = {
    "xml": "application/xml",
    "html": "text/html; charset=utf-8",
    "pdf": "application/pdf",
}

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

_UNSAFE_NAME_RE = re.compile(r"[^\w.-]+")


class InvoiceNotFoundError(LookupError):
    """Fattura inesistente."""


class ArtifactNotFoundError(LookupError):
    """Artefatto non presente nello storage (né rigenerabile)."""


@dataclass
class Artifact:
    content: bytes
    filename: str
    mimetype: str


def _store():
    return get_ingestion_orchestrator().artifact_store


def _pdf_backend():
    return get_ingestion_orchestrator().pdf_backend


# =========================
#  Lettura
# =========================


def list_invoices(
    *,
    search: Optional[str] = None,
    status: Optional[str] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> Dict[str, Any]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    if status:
        status = normalize_status(status)

    with UnitOfWork() as uow:
        items, total = uow.invoices.search(
            search=search, status=status, year=year, month=month, page=page, limit=limit
        )
        total_pages = (total + limit - 1) // limit
        return {
            "invoices": [invoice.to_dict() for invoice in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }


def get_invoice(invoice_id: str) -> Optional[Dict[str, Any]]:
    with UnitOfWork() as uow:
        invoice = uow.invoices.get_by_id(invoice_id)
        return invoice.to_dict() if invoice else None


# =========================
#  Aggiornamenti
# =========================


def _clean_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """:raises ValueError: campi o valori non ammessi"""
    clean: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "status":
            clean["status"] = normalize_status(value)
        elif key == "marked":
            if not isinstance(value, bool):
                raise ValueError("marked deve essere booleano")
            clean["marked"] = value
        elif key == "notes":
            clean["notes"] = None if value is None else str(value)
        elif key == "tags":
            if value is None:
                value = []
            if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
                raise ValueError("tags deve essere una lista di stringhe")
            clean["tags"] = value
        else:
            raise ValueError(f"Campo non aggiornabile: {key}")
    return clean


def update_invoice(invoice_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    clean = _clean_update_fields(fields)
    with UnitOfWork() as uow:
        invoice = uow.invoices.update(invoice_id, clean)
        if invoice is None:
            return None
        uow.commit()
        result = invoice.to_dict()

    log_structured_event(
        "invoice_updated",
        message="Fattura aggiornata",
        invoice_id=invoice_id,
        fields=sorted(clean),
    )
    return result


def toggle_marked(invoice_id: str) -> Optional[Dict[str, Any]]:
    with UnitOfWork() as uow:
        invoice = uow.invoices.get_by_id(invoice_id)
        if invoice is None:
            return None
        invoice.marked = not invoice.marked
        uow.commit()
        return invoice.to_dict()


def batch_update_status(ids: Iterable[str], status: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Restituisce (fatture aggiornate, errori per id)."""
    if status not in VALID_STATUSES:
        raise ValueError(f"Stato non valido: {status}")

    updated: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    for invoice_id in ids:
        try:
            result = update_invoice(invoice_id, {"status": status})
        except ValueError as exc:
            failed.append({"id": invoice_id, "status": 400, "message": str(exc)})
            continue
        if result is None:
            failed.append({"id": invoice_id, "status": 404, "message": "Fattura non trovata"})
        else:
            updated.append(result)
    return updated, failed


# =========================
#  Cancellazione
# =========================


def delete_invoice_with_files(invoice_id: str) -> bool:
    """
    Elimina il record e i suoi tre artefatti. Il record viene rimosso solo dopo
    la cancellazione dei file: se questa fallisce il record resta invariato.
    """
    store = _store()
    with UnitOfWork() as uow:
        invoice = uow.invoices.get_by_id(invoice_id)
        if invoice is None:
            return False

        for category, filename in (
            ("xml", invoice.xml_path),
            ("html", invoice.html_path),
            ("pdf", invoice.pdf_path),
        ):
            if filename:
                store.delete(category, filename)

        uow.invoices.delete(invoice_id)
        uow.commit()

    log_structured_event("invoice_deleted", message="Fattura eliminata", invoice_id=invoice_id)
    return True


def batch_delete(ids: Iterable[str]) -> Tuple[int, List[Dict[str, Any]]]:
    deleted = 0
    failed: List[Dict[str, Any]] = []
    for invoice_id in ids:
        try:
            if delete_invoice_with_files(invoice_id):
                deleted += 1
            else:
                failed.append({"id": invoice_id, "status": 404, "message": "Fattura non trovata"})
        except OSError as exc:
            logger.error(
                "Cancellazione artefatti fallita",
                extra={"component": "invoice_service", "invoice_id": invoice_id, "error": str(exc)},
            )
            failed.append({"id": invoice_id, "status": 500, "message": str(exc)})
    return deleted, failed


# =========================
#  Artefatti
# =========================


def _render_pdf_for(invoice) -> bytes:
    """PDF dall'HTML salvato; se manca anche l'HTML, dall'XML originale."""
    store = _store()
    if invoice.html_path and store.exists("html", invoice.html_path):
        html_content = store.read("html", invoice.html_path).decode("utf-8")
    elif invoice.xml_path and store.exists("xml", invoice.xml_path):
        xml_text = store.read("xml", invoice.xml_path).decode("utf-8")
        html_content = render_html(parse_invoice(xml_text))
    else:
        raise ArtifactNotFoundError("HTML e XML non disponibili per questa fattura")
    return _pdf_backend().render_pdf(html_content)


def get_artifact(invoice_id: str, category: str) -> Artifact:
    """
    :raises InvoiceNotFoundError: fattura inesistente
    :raises ArtifactNotFoundError: file assente e non rigenerabile
    :raises RenderError: rigenerazione PDF fallita
    """
    if category not in ARTIFACT_MIMETYPES:
        raise ValueError(f"Categoria non valida: {category}")

    store = _store()
    with UnitOfWork() as uow:
        invoice = uow.invoices.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        filename = getattr(invoice, f"{category}_path")
        if filename and store.exists(category, filename):
            return Artifact(store.read(category, filename), filename, ARTIFACT_MIMETYPES[category])

        if category != "pdf":
            raise ArtifactNotFoundError(f"File {category.upper()} non trovato")

        logger.warning(
            "PDF in cache non trovato, generazione al volo",
            extra={"component": "invoice_service", "invoice_id": invoice_id},
        )
        try:
            pdf_bytes = _render_pdf_for(invoice)
        except IngestionError as exc:
            raise RenderError(f"Rigenerazione PDF fallita: {exc}") from exc

        if filename:
            store.write_if_absent("pdf", filename, pdf_bytes)
        return Artifact(pdf_bytes, filename or f"{invoice.id}.pdf", ARTIFACT_MIMETYPES["pdf"])


def regenerate_missing_pdfs(ids: Iterable[str]) -> Dict[str, Any]:
    """Rigenera i PDF mancanti dall'HTML salvato; quelli presenti vengono saltati."""
    store = _store()
    generated = skipped = 0
    errors: List[Dict[str, str]] = []

    for invoice_id in ids:
        with UnitOfWork() as uow:
            invoice = uow.invoices.get_by_id(invoice_id)
            if invoice is None or not invoice.pdf_path:
                errors.append({"id": invoice_id, "message": "Fattura non trovata o percorsi mancanti"})
                continue
            if store.exists("pdf", invoice.pdf_path):
                skipped += 1
                continue
            try:
                store.write("pdf", invoice.pdf_path, _render_pdf_for(invoice))
            except (IngestionError, ArtifactNotFoundError, OSError) as exc:
                errors.append({"id": invoice_id, "message": str(exc)})
                continue
            generated += 1

    log_structured_event(
        "pdf_batch_regenerated",
        message="Rigenerazione PDF conclusa",
        generated=generated,
        skipped=skipped,
        failed=len(errors),
    )
    return {
        "processed": generated + skipped,
        "generated": generated,
        "skipped": skipped,
        "failed": len(errors),
        "errors": errors,
    }


def build_zip(ids: Iterable[str], category: str) -> Tuple[bytes, int]:
    """
    Archivio ZIP degli artefatti (``xml`` o ``pdf``) delle fatture indicate, con
    nome file = numero fattura. Restituisce (bytes, numero di file inclusi).
    """
    if category not in ("xml", "pdf"):
        raise ValueError(f"Categoria non valida: {category}")

    buffer = io.BytesIO()
    added = 0
    used_names: set = set()

    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for invoice_id in ids:
            try:
                artifact = get_artifact(invoice_id, category)
                with UnitOfWork() as uow:
                    invoice = uow.invoices.get_by_id(invoice_id)
                    number = invoice.invoice_number if invoice else invoice_id
            except (LookupError, RenderError, OSError) as exc:
                logger.warning(
                    "Artefatto escluso dall'archivio",
                    extra={"component": "invoice_service", "invoice_id": invoice_id, "error": str(exc)},
                )
                continue

            base = _UNSAFE_NAME_RE.sub("_", number or "fattura").strip("_") or "fattura"
            name = f"{base}.{category}"
            counter = 1
            while name in used_names:
                name = f"{base}_{counter}.{category}"
                counter += 1
            used_names.add(name)

            archive.writestr(name, artifact.content)
            added += 1

    return buffer.getvalue(), added


# =========================
#  Statistiche
# =========================


def get_stats() -> Dict[str, Any]:
    store = _store()
    with UnitOfWork() as uow:
        invoices = uow.invoices.get_all()

        pdf_cached = pdf_missing = 0
        by_status = {status: 0 for status in VALID_STATUSES}
        for invoice in invoices:
            if invoice.pdf_path:
                if store.exists("pdf", invoice.pdf_path):
                    pdf_cached += 1
                else:
                    pdf_missing += 1
            status = invoice.normalized_status
            by_status[status] = by_status.get(status, 0) + 1

    total = len(invoices)
    return {
        "total": total,
        "pdf_cached": pdf_cached,
        "pdf_missing": pdf_missing,
        "cache_rate": f"{pdf_cached / total * 100:.1f}%" if total else "0%",
        "by_status": by_status,
    }
