"""
Pacchetto per i servizi (logica di business) dell'applicazione.

I servizi orchestrano:
- parser (busta P7M, XML FatturaPA)
- storage degli artefatti e rendering HTML/PDF
- repository (accesso al DB) tramite UnitOfWork
- avanzamento dei job di upload
- logging strutturato
"""

from .duplicate_service import find_duplicate, is_duplicate
from .ingestion_service import (
    IngestionOrchestrator,
    RawUpload,
    collect_uploads_from_folder,
    get_ingestion_orchestrator,
)
from .naming_service import artifact_filenames, derive_base_name
from .progress_service import ProgressBroadcaster, UploadJob

__all__ = [
    # Import
    "IngestionOrchestrator",
    "RawUpload",
    "collect_uploads_from_folder",
    "get_ingestion_orchestrator",
    # Naming / duplicati
    "derive_base_name",
    "artifact_filenames",
    "find_duplicate",
    "is_duplicate",
    # Avanzamento
    "ProgressBroadcaster",
    "UploadJob",
]
