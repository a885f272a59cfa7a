from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

from fatture.extensions import db
from fatture.models import Invoice

import manage


def _count(app) -> int:
    with app.app_context():
        return db.session.query(Invoice).count()


class TestImportFolder:
    def test_imports_valid_files(self, app, tmp_path: Path, invoice_xml: Callable[..., str], capsys) -> None:
        inbox = tmp_path / "inbox"
        inbox.mkdir()
        (inbox / "a.xml").write_text(invoice_xml(number="F1"), encoding="utf-8")
        (inbox / "b.xml").write_bytes(b"<FatturaElettronica><rotto")

        failures = manage.import_folder(app, str(inbox))

        assert failures == 1
        assert _count(app) == 1
        summary = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert summary["completed"] == 1
        assert summary["failed"] == 1

    def test_splits_into_chunks(self, app, orchestrator, tmp_path: Path, invoice_xml: Callable[..., str]) -> None:
        orchestrator.max_files = 1
        for number in ("C1", "C2", "C3"):
            (tmp_path / f"{number}.xml").write_text(invoice_xml(number=number), encoding="utf-8")

        assert manage.import_folder(app, str(tmp_path)) == 0
        assert _count(app) == 3

    def test_missing_folder(self, app, tmp_path: Path) -> None:
        assert manage.import_folder(app, str(tmp_path / "assente")) == 1

    def test_empty_folder(self, app, tmp_path: Path) -> None:
        assert manage.import_folder(app, str(tmp_path)) == 0


class TestCreateDb:
    def test_create_db_is_idempotent(self, app) -> None:
        assert manage.create_db(app) is True
        assert manage.create_db(app) is True
