"""Tests for decoding uploaded backups."""

from __future__ import annotations

import json
import zipfile
from typing import TYPE_CHECKING, Any

import pytest

from tenantcore.exceptions import ArchiveError
from tenantcore.services.archive_format import (
    METADATA_ENTRY,
    SNAPSHOT_ENTRY,
    SQL_ENTRY,
    WARNINGS_ENTRY,
)
from tenantcore.services.archive_reader import SnapshotPayload, SqlDumpPayload, read_archive

if TYPE_CHECKING:
    from pathlib import Path

LEGACY_DOCUMENT = {
    "version": "1.0",
    "backupDate": "2024-05-01T10:00:00Z",
    "mainDatabase": {"projects": [{"id": 1, "name": "Acme", "database_name": "project_acme_1"}]},
    "projectDatabases": [
        {
            "projectId": 1,
            "projectName": "Acme",
            "schemaName": "project_acme_1",
            "workOrders": [{"id": 1, "customer_wo_id": "WO-1"}],
        }
    ],
}


def _metadata(archive_format: str, backup_type: str = "database") -> str:
    return json.dumps(
        {
            "version": "2.1",
            "format": archive_format,
            "backupType": backup_type,
            "backupDate": "2026-03-01T12:00:00+00:00",
            "schemas": ["public"],
            "includesDatabase": backup_type != "files",
            "includesProjectFiles": backup_type != "database",
        }
    )


def _zip(path: Path, entries: dict[str, Any]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return path


class TestCurrentFormat:
    def test_sql_dump_extracted(self, tmp_path: Path) -> None:
        path = _zip(
            tmp_path / "b.zip",
            {METADATA_ENTRY: _metadata("pg_dump_sql"), SQL_ENTRY: "SELECT 1;\n"},
        )
        workdir = tmp_path / "work"
        workdir.mkdir()
        decoded = read_archive(path, workdir)
        assert isinstance(decoded.database, SqlDumpPayload)
        assert decoded.database.sql_file.parent == workdir
        assert decoded.database.sql_file.read_text() == "SELECT 1;\n"

    def test_snapshot_decoded(self, tmp_path: Path) -> None:
        snapshot = {**LEGACY_DOCUMENT, "version": "2.1"}
        path = _zip(
            tmp_path / "b.zip",
            {METADATA_ENTRY: _metadata("row_snapshot"), SNAPSHOT_ENTRY: json.dumps(snapshot)},
        )
        decoded = read_archive(path, tmp_path)
        assert isinstance(decoded.database, SnapshotPayload)
        assert not decoded.database.legacy
        assert decoded.database.snapshot.project_databases[0].schema_name == "project_acme_1"

    def test_files_only_has_no_database(self, tmp_path: Path) -> None:
        path = _zip(
            tmp_path / "b.zip",
            {
                METADATA_ENTRY: _metadata("project_files_only", "files"),
                "project_files/Acme_1/a.txt": "a",
                "project_files/Acme_1/": "",
            },
        )
        decoded = read_archive(path, tmp_path)
        assert decoded.database is None
        assert decoded.file_entries == ["project_files/Acme_1/a.txt"]

    def test_metadata_format_wins_over_entries(self, tmp_path: Path) -> None:
        path = _zip(
            tmp_path / "b.zip",
            {METADATA_ENTRY: _metadata("pg_dump_sql"), SNAPSHOT_ENTRY: json.dumps(LEGACY_DOCUMENT)},
        )
        with pytest.raises(ArchiveError, match="database_backup.sql is missing"):
            read_archive(path, tmp_path)

    def test_backup_warnings_read(self, tmp_path: Path) -> None:
        path = _zip(
            tmp_path / "b.zip",
            {
                METADATA_ENTRY: _metadata("project_files_only", "files"),
                WARNINGS_ENTRY: json.dumps({"skippedFiles": ["Acme_1/locked.pdf"]}),
            },
        )
        decoded = read_archive(path, tmp_path)
        assert decoded.backup_warnings is not None
        assert decoded.backup_warnings.skipped_files == ["Acme_1/locked.pdf"]

    def test_invalid_metadata(self, tmp_path: Path) -> None:
        path = _zip(tmp_path / "b.zip", {METADATA_ENTRY: json.dumps({"format": "tarball"})})
        with pytest.raises(ArchiveError, match="Invalid backup_metadata.json"):
            read_archive(path, tmp_path)


class TestLegacyFormat:
    def test_zipped_legacy_document(self, tmp_path: Path) -> None:
        path = _zip(tmp_path / "old.zip", {SNAPSHOT_ENTRY: json.dumps(LEGACY_DOCUMENT)})
        decoded = read_archive(path, tmp_path)
        assert decoded.metadata is None
        assert isinstance(decoded.database, SnapshotPayload)
        assert decoded.database.legacy
        assert decoded.database.snapshot.main_database["projects"][0]["name"] == "Acme"

    def test_bare_json_upload(self, tmp_path: Path) -> None:
        path = tmp_path / "old.json"
        path.write_text(json.dumps(LEGACY_DOCUMENT))
        decoded = read_archive(path, tmp_path)
        assert isinstance(decoded.database, SnapshotPayload)
        assert decoded.database.legacy

    def test_unversioned_snapshot_without_metadata_rejected(self, tmp_path: Path) -> None:
        document = {**LEGACY_DOCUMENT, "version": "2.1"}
        path = _zip(tmp_path / "b.zip", {SNAPSHOT_ENTRY: json.dumps(document)})
        with pytest.raises(ArchiveError, match="Unsupported backup version"):
            read_archive(path, tmp_path)

    def test_zip_without_backup_entries(self, tmp_path: Path) -> None:
        path = _zip(tmp_path / "b.zip", {"readme.txt": "hello"})
        with pytest.raises(ArchiveError, match="neither"):
            read_archive(path, tmp_path)

    def test_garbage_upload(self, tmp_path: Path) -> None:
        path = tmp_path / "junk.bin"
        path.write_bytes(b"\x00\x01not json")
        with pytest.raises(ArchiveError, match="neither a zip archive nor a JSON backup"):
            read_archive(path, tmp_path)
