"""
Storage su filesystem degli artefatti generati (XML, HTML, PDF).

Layout: ``<root>/<categoria>/<nome file>``, con categoria in ``xml``/``html``/``pdf``.
Le scritture sono atomiche (file temporaneo + rename), quindi un file presente è
sempre completo e subito leggibile dallo stesso processo.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from fatture.services.naming_service import ARTIFACT_CATEGORIES

logger = logging.getLogger(__name__)


class ArtifactStore:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).resolve()

    def path_for(self, category: str, filename: str) -> Path:
        if category not in ARTIFACT_CATEGORIES:
            raise ValueError(f"Categoria artefatto non valida: {category}")
        name = Path(filename).name
        if not name or name != filename:
            raise ValueError(f"Nome file artefatto non valido: {filename!r}")
        return self.root / category / name

    def exists(self, category: str, filename: str) -> bool:
        return self.path_for(category, filename).is_file()

    def read(self, category: str, filename: str) -> bytes:
        """:raises FileNotFoundError: se l'artefatto non esiste"""
        return self.path_for(category, filename).read_bytes()

    def write(self, category: str, filename: str, data: bytes) -> Path:
        target = self.path_for(category, filename)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        logger.debug(
            "Artefatto scritto",
            extra={"component": "artifact_store", "category": category, "file_name": filename, "size": len(data)},
        )
        return target

    def write_if_absent(self, category: str, filename: str, data: bytes) -> bool:
        """Scrive solo se il file non esiste. Restituisce True se ha scritto."""
        if self.exists(category, filename):
            return False
        self.write(category, filename, data)
        return True

    def delete(self, category: str, filename: str) -> bool:
        """Rimuove l'artefatto; un file già assente non è un errore."""
        path = self.path_for(category, filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(
            "Artefatto eliminato",
            extra={"component": "artifact_store", "category": category, "file_name": filename},
        )
        return True
