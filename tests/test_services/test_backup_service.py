"""Tests for backup archive production."""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tenantcore.exceptions import ArchiveError
from tenantcore.filesystem.file_store import FileTreeStore
from tenantcore.services.archive_format import (
    METADATA_ENTRY,
    SNAPSHOT_ENTRY,
    SQL_ENTRY,
    WARNINGS_ENTRY,
    ArchiveFormat,
    BackupType,
)
from tenantcore.services.backup_service import prepare_backup, stream_archive

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenantcore.config import Settings
    from tenantcore.database import Database
    from tenantcore.models.project import Project


def _names(archive_path: Path) -> list[str]:
    with zipfile.ZipFile(archive_path) as archive:
        return archive.namelist()


def _read_json(archive_path: Path, entry: str) -> Any:
    with zipfile.ZipFile(archive_path) as archive:
        return json.loads(archive.read(entry))


class _RangeLockedFile(io.BytesIO):
    """Opens fine but fails on read, like a file with a byte-range lock."""

    def read(self, size: int | None = -1, /) -> bytes:
        raise PermissionError("region is locked")


class TestBackupType:
    def test_sections(self) -> None:
        assert BackupType.DATABASE.includes_database
        assert not BackupType.DATABASE.includes_files
        assert BackupType.FILES.includes_files
        assert not BackupType.FILES.includes_database
        assert BackupType.FULL.includes_database and BackupType.FULL.includes_files

    def test_filename_prefix(self) -> None:
        assert BackupType.FULL.filename_prefix == "full_backup"


class TestDatabaseArchive:
    async def test_zero_file_tenant_has_only_dump_and_metadata(
        self,
        add_project: Callable[..., Awaitable[Project]],
        add_work_order: Callable[..., Awaitable[int]],
        build_archive: Callable[..., Awaitable[Path]],
    ) -> None:
        project = await add_project("Acme")
        await add_work_order(project.database_name)
        archive_path = await build_archive(BackupType.FULL)
        assert sorted(_names(archive_path)) == sorted([METADATA_ENTRY, SNAPSHOT_ENTRY])

    async def test_metadata_describes_snapshot(
        self,
        add_project: Callable[..., Awaitable[Project]],
        build_archive: Callable[..., Awaitable[Path]],
    ) -> None:
        project = await add_project("Acme")
        archive_path = await build_archive(BackupType.DATABASE)
        assert archive_path.name.startswith("db_backup_")
        metadata = _read_json(archive_path, METADATA_ENTRY)
        assert metadata["format"] == ArchiveFormat.ROW_SNAPSHOT
        assert metadata["backupType"] == "database"
        assert metadata["schemas"] == ["public", project.database_name]
        assert metadata["includesDatabase"] is True
        assert metadata["includesProjectFiles"] is False
        assert metadata["databaseVersion"].startswith("SQLite")

    async def test_snapshot_holds_tenant_rows(
        self,
        add_project: Callable[..., Awaitable[Project]],
        add_work_order: Callable[..., Awaitable[int]],
        build_archive: Callable[..., Awaitable[Path]],
    ) -> None:
        project = await add_project("Acme")
        await add_work_order(project.database_name, customer_wo_id="WO-1")
        await add_work_order(project.database_name, customer_wo_id="WO-2")
        snapshot = _read_json(await build_archive(), SNAPSHOT_ENTRY)
        assert [p["schemaName"] for p in snapshot["projectDatabases"]] == [project.database_name]
        work_orders = snapshot["projectDatabases"][0]["workOrders"]
        assert [wo["customer_wo_id"] for wo in work_orders] == ["WO-1", "WO-2"]
        assert len(snapshot["mainDatabase"]["projects"]) == 1


class TestFileArchive:
    async def test_files_archived_under_prefix(
        self, test_settings: Settings, build_archive: Callable[..., Awaitable[Path]]
    ) -> None:
        store = FileTreeStore(test_settings.project_files_dir)
        store.write_relative("Acme_1/work_orders/WO-1/photo.jpg", b"jpeg")
        archive_path = await build_archive(BackupType.FILES)
        names = _names(archive_path)
        assert "project_files/Acme_1/work_orders/WO-1/photo.jpg" in names
        assert SNAPSHOT_ENTRY not in names
        assert _read_json(archive_path, METADATA_ENTRY)["format"] == ArchiveFormat.FILES_ONLY

    async def test_unreadable_file_recorded_as_warning(
        self, test_settings: Settings, build_archive: Callable[..., Awaitable[Path]]
    ) -> None:
        store = FileTreeStore(test_settings.project_files_dir)
        store.write_relative("Acme_1/work_orders/WO-1/ok.txt", b"fine")
        store.write_relative("Acme_1/work_orders/WO-1/locked.txt", b"busy")
        original_open = Path.open

        def _open(self: Path, *args: Any, **kwargs: Any) -> Any:
            if self.name == "locked.txt":
                raise PermissionError("file is locked")
            return original_open(self, *args, **kwargs)

        with patch.object(Path, "open", _open):
            archive_path = await build_archive(BackupType.FULL)

        names = _names(archive_path)
        assert "project_files/Acme_1/work_orders/WO-1/ok.txt" in names
        assert "project_files/Acme_1/work_orders/WO-1/locked.txt" not in names
        warnings = _read_json(archive_path, WARNINGS_ENTRY)
        assert warnings["skippedFiles"] == ["Acme_1/work_orders/WO-1/locked.txt"]

    async def test_read_failure_after_open_recorded_as_warning(
        self, test_settings: Settings, build_archive: Callable[..., Awaitable[Path]]
    ) -> None:
        store = FileTreeStore(test_settings.project_files_dir)
        store.write_relative("Acme_1/work_orders/WO-1/ok.txt", b"fine")
        store.write_relative("Acme_1/work_orders/WO-1/range-locked.txt", b"busy")
        original_open = Path.open

        def _open(self: Path, *args: Any, **kwargs: Any) -> Any:
            if self.name == "range-locked.txt":
                return _RangeLockedFile()
            return original_open(self, *args, **kwargs)

        with patch.object(Path, "open", _open):
            archive_path = await build_archive(BackupType.FULL)

        names = _names(archive_path)
        assert "project_files/Acme_1/work_orders/WO-1/ok.txt" in names
        assert not any(name.endswith("range-locked.txt") for name in names)
        with zipfile.ZipFile(archive_path) as archive:
            assert archive.read("project_files/Acme_1/work_orders/WO-1/ok.txt") == b"fine"
        warnings = _read_json(archive_path, WARNINGS_ENTRY)
        assert warnings["skippedFiles"] == ["Acme_1/work_orders/WO-1/range-locked.txt"]


class TestPgDumpPlan:
    async def test_pg_dump_used_when_configured(
        self, database: Database, test_settings: Settings
    ) -> None:
        settings = test_settings.model_copy(update={"backup_dump_format": "pg_dump"})

        async def _fake_dump(invoker: Any, url: str, schemas: list[str], out: Path) -> None:
            out.write_text("SELECT 1;\n")

        with patch(
            "tenantcore.services.backup_service.pg_service.create_dump",
            AsyncMock(side_effect=_fake_dump),
        ):
            plan = await prepare_backup(
                BackupType.DATABASE,
                database=database,
                settings=settings,
                invoker=MagicMock(),
                file_store=FileTreeStore(settings.project_files_dir),
            )
        assert plan.metadata.format == ArchiveFormat.PG_DUMP_SQL
        workdir = plan.workdir
        assert workdir is not None
        chunks = b"".join(stream_archive(plan))
        assert not workdir.exists()
        archive_path = test_settings.project_files_dir.parent / "pg.zip"
        archive_path.write_bytes(chunks)
        assert sorted(_names(archive_path)) == sorted([METADATA_ENTRY, SQL_ENTRY])

    async def test_dump_failure_cleans_workdir(
        self, database: Database, test_settings: Settings, tmp_path: Path
    ) -> None:
        settings = test_settings.model_copy(update={"backup_dump_format": "pg_dump"})
        workdir = tmp_path / "backup-work"
        workdir.mkdir()
        with (
            patch(
                "tenantcore.services.backup_service.pg_service.create_dump",
                AsyncMock(side_effect=ArchiveError("pg_dump failed: boom")),
            ),
            patch(
                "tenantcore.services.backup_service.tempfile.mkdtemp", return_value=str(workdir)
            ),
            pytest.raises(ArchiveError, match="boom"),
        ):
            await prepare_backup(
                BackupType.DATABASE,
                database=database,
                settings=settings,
                invoker=MagicMock(),
                file_store=FileTreeStore(settings.project_files_dir),
            )
        assert not workdir.exists()
