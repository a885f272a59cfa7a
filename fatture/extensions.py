"""
Modulo che contiene le estensioni Flask condivise (db, logging, pipeline di import).
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

# Istanza globale di SQLAlchemy, sarà inizializzata in create_app()
db = SQLAlchemy()

INGESTION_EXTENSION_KEY = "fatture.ingestion"


class JsonFormatter(logging.Formatter):
    """
    Formatter personalizzato che produce log in formato JSON.

    Campi principali:
    - timestamp: ISO 8601 (UTC)
    - level: livello di log (INFO, ERROR, ecc.)
    - logger: nome del logger
    - module: modulo sorgente
    - message: messaggio di log
    - extra: eventuali campi extra passati come extra={...}
    """

    standard_attrs = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "taskName", "message", "asctime",
    })

    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self.standard_attrs
        }
        if extra_fields:
            log_record["extra"] = extra_fields

        return json.dumps(log_record, ensure_ascii=False, default=str)


def init_extensions(app: Flask) -> None:
    """
    Inizializza tutte le estensioni collegate all'app Flask.

    Questa funzione viene chiamata da create_app().
    """
    _ensure_sqlite_dir(app)
    db.init_app(app)
    _init_logging(app)
    init_ingestion(app)


def _ensure_sqlite_dir(app: Flask) -> None:
    uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    prefix = "sqlite:///"
    if uri.startswith(prefix) and len(uri) > len(prefix):
        Path(uri[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


def init_ingestion(app: Flask) -> None:
    """
    Crea i collaboratori della pipeline di import (storage artefatti, backend PDF,
    broadcaster dell'avanzamento) e li registra in ``app.extensions``.
    """
    from fatture.services.artifact_store import ArtifactStore
    from fatture.services.ingestion_service import IngestionOrchestrator
    from fatture.services.progress_service import ProgressBroadcaster
    from fatture.services.render_service import PdfRenderBackend

    artifact_store = ArtifactStore(app.config["STORAGE_DIR"])
    pdf_backend = PdfRenderBackend(
        timeout=app.config.get("PDF_RENDER_TIMEOUT", 30.0),
        max_renders=app.config.get("PDF_SESSION_MAX_RENDERS", 200),
    )
    broadcaster = ProgressBroadcaster(
        retention_seconds=app.config.get("PROGRESS_JOB_RETENTION_SECONDS", 300.0),
    )

    app.extensions[INGESTION_EXTENSION_KEY] = IngestionOrchestrator(
        app,
        artifact_store,
        pdf_backend,
        broadcaster,
        max_workers=app.config.get("INGESTION_MAX_WORKERS", 4),
        max_files=app.config.get("MAX_UPLOAD_FILES", 10),
        max_file_size=app.config.get("MAX_UPLOAD_FILE_SIZE", 10 * 1024 * 1024),
        openssl_bin=app.config.get("OPENSSL_BIN"),
    )


def _init_logging(app: Flask) -> None:
    """
    Configura il logging applicativo:

    - handler su file con RotatingFileHandler
    - handler su console (stream)
    - formatter JSON strutturato
    """
    log_dir = app.config.get("LOG_DIR")
    log_file_name = app.config.get("LOG_FILE_NAME", "app.log")
    log_level_name = app.config.get("LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, log_file_name)

    log_level = getattr(logging, log_level_name.upper(), logging.INFO)

    json_formatter = JsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Evita di aggiungere handler duplicati se create_app viene chiamata più volte (es. in test)
    if not getattr(root_logger, "_json_logging_configured", False):
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(json_formatter)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(json_formatter)

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)
        root_logger._json_logging_configured = True  # type: ignore[attr-defined]

    app.logger.setLevel(log_level)

    # WeasyPrint e fontTools sono molto verbosi a livello INFO
    logging.getLogger("weasyprint").setLevel(logging.WARNING)
    logging.getLogger("fontTools").setLevel(logging.WARNING)

    app.logger.info(
        "Logging JSON inizializzato.",
        extra={
            "component": "logging",
            "log_path": log_path,
            "level": log_level_name,
        },
    )
