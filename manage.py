#!/usr/bin/env python3
"""
Script di gestione dell'applicazione fatture elettroniche.

Uso:
    python manage.py runserver                 # Avvia il server di sviluppo
    python manage.py create-db                 # Crea le tabelle del database
    python manage.py import-folder [cartella]  # Importa i file XML/P7M di una cartella
"""

import argparse
import json
import logging
import os
import sys

from sqlalchemy.exc import OperationalError as SAOperationalError
from pymysql.err import OperationalError as MySQLOperationalError

from fatture import create_app
from fatture.errors import BatchSubmissionError
from fatture.extensions import db
from fatture.services.ingestion_service import (
    collect_uploads_from_folder,
    get_ingestion_orchestrator,
)
from config import DevConfig

# ---------------------------------------------------------------------
# Logger CLI (fuori dal contesto Flask)
# ---------------------------------------------------------------------
cli_logger = logging.getLogger("manage_cli")
cli_logger.setLevel(logging.INFO)

if not cli_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(levelname)s: %(name)s: %(message)s")
    )
    cli_logger.addHandler(handler)
    cli_logger.propagate = False


# ---------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------
def _import_all_models() -> None:
    """Assicura che tutti i modelli siano registrati prima di create_all()."""
    import fatture.models  # noqa: F401


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ---------------------------------------------------------------------
# Comandi
# ---------------------------------------------------------------------
def create_db(app) -> bool:
    """Crea tutte le tabelle del database definite nei modelli SQLAlchemy."""
    with app.app_context():
        cli_logger.info("Tentativo di creare tutte le tabelle nel database...")
        try:
            _import_all_models()
            db.create_all()
            cli_logger.info("Database creato con successo.")
            return True
        except (SAOperationalError, MySQLOperationalError) as e:
            cli_logger.error("Errore di connessione o permessi sul database: %s", e)
            cli_logger.info(
                "Verifica che il database sia attivo e che l'utente '%s' abbia accesso al DB '%s'.",
                app.config.get("DB_USER"),
                app.config.get("DB_NAME"),
            )
            return False


def import_folder(app, folder: str) -> int:
    """
    Importa in modo sincrono i file di una cartella, a blocchi di MAX_UPLOAD_FILES.
    Restituisce il numero di file non importati.
    """
    try:
        uploads = collect_uploads_from_folder(folder)
    except BatchSubmissionError as e:
        cli_logger.error("%s", e)
        return 1

    if not uploads:
        cli_logger.info("Nessun file .xml/.p7m trovato in %s", folder)
        return 0

    orchestrator = get_ingestion_orchestrator(app)
    failures = 0
    for chunk in _chunks(uploads, orchestrator.max_files):
        try:
            snapshot = orchestrator.ingest_batch(chunk)
        except BatchSubmissionError as e:
            cli_logger.error("Blocco rifiutato: %s (%s)", e, ", ".join(e.files))
            failures += len(chunk)
            continue

        for error in snapshot["errors"]:
            cli_logger.warning(
                "%s: %s%s",
                error["filename"],
                error["error"],
                f" [{error['code']}]" if error.get("code") else "",
            )
        failures += len(snapshot["errors"])
        print(json.dumps(
            {k: snapshot[k] for k in ("job_id", "total", "completed", "failed", "status")},
            ensure_ascii=False,
        ))

    cli_logger.info(
        "Import concluso: %d file importati, %d non importati.",
        len(uploads) - failures,
        failures,
    )
    return failures


def run_server(app) -> None:
    """Avvia il server di sviluppo Flask (LAN-ready)."""
    host = os.environ.get("FLASK_RUN_HOST", "0.0.0.0")
    port = int(os.environ.get("FLASK_RUN_PORT", "5000"))
    debug = app.config.get("DEBUG", False)

    app.logger.info("Avvio del server su http://%s:%s", host, port)
    app.run(host=host, port=port, debug=debug)


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------
def main() -> None:
    parser = argparse.ArgumentParser(
        description="Gestione dell'applicazione fatture elettroniche."
    )
    parser.add_argument(
        "command",
        choices=["runserver", "create-db", "import-folder"],
        help="Comando da eseguire.",
    )
    parser.add_argument(
        "folder",
        nargs="?",
        default=None,
        help="Cartella da importare (default: XML_INBOX_PATH).",
    )

    args = parser.parse_args()

    app = create_app(DevConfig)

    if args.command == "runserver":
        run_server(app)
    elif args.command == "create-db":
        if not create_db(app):
            sys.exit(1)
    elif args.command == "import-folder":
        folder = args.folder or app.config["XML_INBOX_PATH"]
        if not create_db(app):
            sys.exit(1)
        with app.app_context():
            failures = import_folder(app, folder)
        sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
