"""
Modulo di configurazione per l'applicazione Flask.
"""

import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Configurazione base, comune a tutti gli ambienti."""

    # Chiave segreta: in produzione deve essere sovrascritta da variabile d'ambiente
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # --- CONFIGURAZIONE DATABASE ---------------------------------------------
    DB_USER = os.environ.get("DB_USER", "fatture")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = os.environ.get("DB_PORT", "3306")
    DB_NAME = os.environ.get("DB_NAME", "app_fatture")

    # Stringa di connessione composta in modo parametrico
    DEFAULT_DB_URL = (
        f"mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    )

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", DEFAULT_DB_URL)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- STORAGE ARTEFATTI (XML / HTML / PDF) ---------------------------------
    # Radice dello storage: le sottocartelle xml/, html/, pdf/ vengono create al bisogno
    STORAGE_DIR = os.environ.get("STORAGE_DIR", str(BASE_DIR / "invoice_storage"))

    # Cartella da cui `manage.py import-folder` legge i file da importare
    XML_INBOX_PATH = os.environ.get(
        "XML_INBOX_PATH",
        str(BASE_DIR / "data" / "fatture_xml"),
    )

    # --- UPLOAD ----------------------------------------------------------------
    # Limiti applicati prima di creare il job (rifiuto sincrono)
    MAX_UPLOAD_FILES = int(os.environ.get("MAX_UPLOAD_FILES", "10"))
    MAX_UPLOAD_FILE_SIZE = int(os.environ.get("MAX_UPLOAD_FILE_SIZE", str(10 * 1024 * 1024)))

    # Limite complessivo della richiesta multipart (10 file da 10 MB + margine)
    MAX_CONTENT_LENGTH = 110 * 1024 * 1024

    # --- PIPELINE DI IMPORT ------------------------------------------------------
    INGESTION_MAX_WORKERS = int(os.environ.get("INGESTION_MAX_WORKERS", "4"))

    # Il rendering PDF può bloccarsi su HTML malformato: timeout per singolo file
    PDF_RENDER_TIMEOUT = float(os.environ.get("PDF_RENDER_TIMEOUT", "30"))
    # Dopo N render la sessione WeasyPrint viene ricreata
    PDF_SESSION_MAX_RENDERS = int(os.environ.get("PDF_SESSION_MAX_RENDERS", "200"))

    # Per quanto tempo un job concluso resta consultabile via SSE
    PROGRESS_JOB_RETENTION_SECONDS = float(
        os.environ.get("PROGRESS_JOB_RETENTION_SECONDS", str(5 * 60))
    )

    # Eseguibile openssl usato per lo sbustamento dei P7M (None = cerca nel PATH)
    OPENSSL_BIN = os.environ.get("OPENSSL_BIN")

    # --- LOGGING -------------------------------------------------------------
    LOG_DIR = os.environ.get("LOG_DIR", str(BASE_DIR / "logs"))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "app.log")


class DevConfig(Config):
    """Configurazione per ambiente di sviluppo."""
    DEBUG = True
    ENV = "development"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'data' / 'app_fatture.db'}"
    )


class ProdConfig(Config):
    """Configurazione per ambiente di produzione."""
    DEBUG = False
    ENV = "production"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    """Configurazione per la suite pytest (i percorsi vengono sovrascritti dalle fixture)."""
    TESTING = True
    DEBUG = False
    ENV = "testing"
    LOG_LEVEL = "WARNING"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    INGESTION_MAX_WORKERS = 3
    PDF_RENDER_TIMEOUT = 5.0
    PROGRESS_JOB_RETENTION_SECONDS = 1.0
