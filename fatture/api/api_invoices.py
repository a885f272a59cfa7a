"""
API JSON per le fatture elettroniche.

Upload con avanzamento via Server-Sent Events, gestione dei record e accesso
agli artefatti (XML / HTML / PDF).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, List, Optional

from flask import Blueprint, Response, jsonify, request, stream_with_context

from fatture.errors import BatchSubmissionError, JobNotFoundError, RenderError
from fatture.services import invoice_service
from fatture.services.ingestion_service import get_ingestion_orchestrator, uploads_from_files

logger = logging.getLogger(__name__)

api_invoices_bp = Blueprint("api_invoices", __name__)


def _envelope(success: bool, message: str, payload: Any = None, status: int = 200):
    return jsonify({"success": success, "message": message, "payload": payload}), status


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value in (None, "", "all"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ids_from_body() -> List[str]:
    data = request.get_json(silent=True) or {}
    ids = data.get("ids")
    if not isinstance(ids, list):
        return []
    return [str(i) for i in ids if i]


# =========================
#  Upload e avanzamento
# =========================


@api_invoices_bp.route("/upload", methods=["POST"])
def api_upload_invoices():
    """Avvia l'import di un batch di file (campo multipart ``files``)."""
    uploads = uploads_from_files(request.files.getlist("files"))
    try:
        job_id = get_ingestion_orchestrator().submit_batch(uploads)
    except BatchSubmissionError as exc:
        return _envelope(False, str(exc), {"files": exc.files}, 400)

    return _envelope(True, "Caricamento avviato.", {"job_id": job_id, "total": len(uploads)}, 202)


@api_invoices_bp.route("/upload/progress/<job_id>", methods=["GET"])
def api_upload_progress(job_id: str):
    """Stream SSE degli snapshot del job, chiuso dopo lo stato terminale."""
    try:
        stream = get_ingestion_orchestrator().broadcaster.subscribe(job_id)
    except JobNotFoundError as exc:
        return _envelope(False, str(exc), None, 404)

    def generate():
        try:
            for snapshot in stream:
                yield f"data: {json.dumps(snapshot, ensure_ascii=False)}\n\n"
        finally:
            stream.close()

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


# =========================
#  Elenco, dettaglio, modifiche
# =========================


@api_invoices_bp.route("", methods=["GET"])
@api_invoices_bp.route("/", methods=["GET"])
def api_list_invoices():
    try:
        result = invoice_service.list_invoices(
            search=request.args.get("search") or None,
            status=request.args.get("status") if request.args.get("status") not in (None, "", "all") else None,
            year=_parse_int(request.args.get("year")),
            month=_parse_int(request.args.get("month")),
            page=_parse_int(request.args.get("page")) or 1,
            limit=_parse_int(request.args.get("limit")) or invoice_service.DEFAULT_PAGE_SIZE,
        )
    except ValueError as exc:
        return _envelope(False, str(exc), None, 400)
    return _envelope(True, "OK", result)


@api_invoices_bp.route("/stats", methods=["GET"])
def api_invoice_stats():
    return _envelope(True, "OK", invoice_service.get_stats())


@api_invoices_bp.route("/<invoice_id>", methods=["GET"])
def api_get_invoice(invoice_id: str):
    invoice = invoice_service.get_invoice(invoice_id)
    if invoice is None:
        return _envelope(False, "Fattura non trovata.", None, 404)
    return _envelope(True, "OK", invoice)


@api_invoices_bp.route("/<invoice_id>", methods=["PATCH"])
def api_update_invoice(invoice_id: str):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict) or not data:
        return _envelope(False, "Nessun campo da aggiornare.", None, 400)
    try:
        invoice = invoice_service.update_invoice(invoice_id, data)
    except ValueError as exc:
        return _envelope(False, str(exc), None, 400)
    if invoice is None:
        return _envelope(False, "Fattura non trovata.", None, 404)
    return _envelope(True, "Fattura aggiornata con successo.", invoice)


@api_invoices_bp.route("/<invoice_id>/mark", methods=["POST"])
def api_toggle_mark(invoice_id: str):
    invoice = invoice_service.toggle_marked(invoice_id)
    if invoice is None:
        return _envelope(False, "Fattura non trovata.", None, 404)
    return _envelope(True, "Contrassegno aggiornato.", invoice)


@api_invoices_bp.route("/<invoice_id>", methods=["DELETE"])
def api_delete_invoice(invoice_id: str):
    try:
        deleted = invoice_service.delete_invoice_with_files(invoice_id)
    except OSError as exc:
        logger.error(
            "Cancellazione fattura fallita",
            extra={"component": "api_invoices", "invoice_id": invoice_id, "error": str(exc)},
        )
        return _envelope(False, "Impossibile eliminare i file della fattura.", None, 500)
    if not deleted:
        return _envelope(False, "Fattura non trovata.", None, 404)
    return _envelope(True, "Fattura eliminata.", {"id": invoice_id})


# =========================
#  Operazioni multiple
# =========================


@api_invoices_bp.route("/batch-delete", methods=["POST"])
def api_batch_delete():
    ids = _ids_from_body()
    if not ids:
        return _envelope(False, "Nessun id fattura indicato.", None, 400)
    deleted, failed = invoice_service.batch_delete(ids)
    payload = {"deleted": deleted, "failed": failed}
    if failed:
        return _envelope(False, "Alcune fatture non sono state eliminate.", payload, 207)
    return _envelope(True, "Fatture eliminate.", payload)


@api_invoices_bp.route("/batch-update-status", methods=["POST"])
def api_batch_update_status():
    data = request.get_json(silent=True) or {}
    ids = _ids_from_body()
    if not ids:
        return _envelope(False, "Nessun id fattura indicato.", None, 400)
    try:
        updated, failed = invoice_service.batch_update_status(ids, data.get("status"))
    except ValueError as exc:
        return _envelope(False, str(exc), None, 400)
    payload = {"updated": len(updated), "failed": failed, "invoices": updated}
    if failed:
        return _envelope(False, "Alcune fatture non sono state aggiornate.", payload, 207)
    return _envelope(True, "Stato aggiornato.", payload)


@api_invoices_bp.route("/batch-generate-pdf", methods=["POST"])
def api_batch_generate_pdf():
    ids = _ids_from_body()
    if not ids:
        return _envelope(False, "Nessun id fattura indicato.", None, 400)
    result = invoice_service.regenerate_missing_pdfs(ids)
    return _envelope(True, "Generazione PDF completata.", result)


@api_invoices_bp.route("/batch-download/<category>", methods=["POST"])
def api_batch_download(category: str):
    if category not in ("xml", "pdf"):
        return _envelope(False, "Formato non supportato.", None, 404)
    ids = _ids_from_body()
    if not ids:
        return _envelope(False, "Nessun id fattura indicato.", None, 400)

    content, added = invoice_service.build_zip(ids, category)
    if added == 0:
        return _envelope(False, "Nessun file aggiunto all'archivio.", None, 400)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    response = Response(content, mimetype="application/zip")
    response.headers["Content-Disposition"] = f'attachment; filename="fatture_{category}_{stamp}.zip"'
    return response


# =========================
#  Artefatti
# =========================


def _artifact_response(invoice_id: str, category: str, *, download: bool = False):
    try:
        artifact = invoice_service.get_artifact(invoice_id, category)
    except invoice_service.InvoiceNotFoundError:
        return _envelope(False, "Fattura non trovata.", None, 404)
    except invoice_service.ArtifactNotFoundError as exc:
        return _envelope(False, str(exc), None, 404)
    except RenderError as exc:
        logger.error(
            "Generazione PDF al volo fallita",
            extra={"component": "api_invoices", "invoice_id": invoice_id, "error": str(exc)},
        )
        return _envelope(False, "Impossibile generare il PDF.", None, 500)

    response = Response(artifact.content, mimetype=artifact.mimetype)
    disposition = "attachment" if download else "inline"
    response.headers["Content-Disposition"] = f'{disposition}; filename="{artifact.filename}"'
    return response


@api_invoices_bp.route("/<invoice_id>/xml", methods=["GET"])
def api_invoice_xml(invoice_id: str):
    return _artifact_response(invoice_id, "xml")


@api_invoices_bp.route("/<invoice_id>/xml/download", methods=["GET"])
def api_invoice_xml_download(invoice_id: str):
    return _artifact_response(invoice_id, "xml", download=True)


@api_invoices_bp.route("/<invoice_id>/html", methods=["GET"])
def api_invoice_html(invoice_id: str):
    return _artifact_response(invoice_id, "html")


@api_invoices_bp.route("/<invoice_id>/pdf", methods=["GET"])
def api_invoice_pdf(invoice_id: str):
    return _artifact_response(invoice_id, "pdf")


@api_invoices_bp.route("/<invoice_id>/pdf/download", methods=["GET"])
def api_invoice_pdf_download(invoice_id: str):
    return _artifact_response(invoice_id, "pdf", download=True)
