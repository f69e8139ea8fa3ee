"""Backup archive building.

Everything that can fail loudly (the database dump, tenant snapshots) runs in
``prepare_backup`` before a response is started. ``stream_archive`` then
writes the zip entry by entry into small chunks; unreadable files become
warnings, and a failure of the stream itself can only be logged because the
client already has the response headers.
"""

from __future__ import annotations

import io
import logging
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from tenantcore.exceptions import ArchiveError
from tenantcore.models.project import Project
from tenantcore.models.work_order import work_orders_table
from tenantcore.services import pg_service
from tenantcore.services.archive_format import (
    FILES_PREFIX,
    METADATA_ENTRY,
    SNAPSHOT_ENTRY,
    SQL_ENTRY,
    WARNINGS_ENTRY,
    ArchiveFormat,
    BackupMetadata,
    BackupType,
    BackupWarnings,
    ProjectRows,
    SystemSnapshot,
)
from tenantcore.services.datetime_service import format_iso, now_utc
from tenantcore.services.restore_plan import main_restore_plan

if TYPE_CHECKING:
    from collections.abc import Iterator

    from tenantcore.config import Settings
    from tenantcore.database import Database
    from tenantcore.filesystem.file_store import FileTreeStore
    from tenantcore.tools.invoker import ToolInvoker

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Project files up to this size are buffered in memory, larger ones on disk.
SPOOL_MAX_SIZE = 8 * 1024 * 1024


@dataclass
class BackupPlan:
    """Everything needed to stream one archive."""

    backup_type: BackupType
    metadata: BackupMetadata
    filename: str
    sql_file: Path | None = None
    snapshot: SystemSnapshot | None = None
    file_store: FileTreeStore | None = None
    workdir: Path | None = None
    skipped_files: list[str] = field(default_factory=list)

    def cleanup(self) -> None:
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None


class _ChunkSink(io.RawIOBase):
    """Unseekable write target that hands buffered bytes back to the caller."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:  # type: ignore[override]
        self._chunks.append(bytes(data))
        return len(data)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


async def tenant_schemas(database: Database) -> list[tuple[int, str, str]]:
    """Return ``(project id, project name, schema)`` for every provisioned project."""
    async with database.session_factory() as session:
        result = await session.execute(
            select(Project.id, Project.name, Project.database_name)
            .where(Project.database_name.is_not(None))
            .order_by(Project.id)
        )
        return [(row.id, row.name, row.database_name) for row in result]


async def database_version(database: Database) -> str | None:
    query = "SELECT sqlite_version()" if database.is_sqlite else "SELECT version()"
    try:
        async with database.engine.connect() as conn:
            value = (await conn.execute(text(query))).scalar()
    except SQLAlchemyError as exc:
        logger.warning("Could not read database version: %s", exc)
        return None
    return f"SQLite {value}" if database.is_sqlite else str(value)


async def capture_snapshot(database: Database) -> SystemSnapshot:
    """Read every Restore Plan table and every tenant's work orders."""
    projects = await tenant_schemas(database)
    snapshot = SystemSnapshot(backup_date=format_iso(now_utc()))
    try:
        async with database.engine.connect() as conn:
            for spec in main_restore_plan():
                rows = (await conn.execute(select(spec.table))).mappings().all()
                snapshot.main_database[spec.name] = [dict(row) for row in rows]
            for project_id, project_name, schema_name in projects:
                table = work_orders_table(schema_name)
                rows = (
                    await conn.execute(select(table).order_by(table.c.id))
                ).mappings().all()
                snapshot.project_databases.append(
                    ProjectRows(
                        project_id=project_id,
                        project_name=project_name,
                        schema_name=schema_name,
                        work_orders=[dict(row) for row in rows],
                    )
                )
    except SQLAlchemyError as exc:
        raise ArchiveError(f"Failed to read database for backup: {exc}") from exc
    logger.info(
        "Captured snapshot of %d tables and %d tenant schemas",
        len(snapshot.main_database),
        len(snapshot.project_databases),
    )
    return snapshot


async def prepare_backup(
    backup_type: BackupType,
    *,
    database: Database,
    settings: Settings,
    invoker: ToolInvoker,
    file_store: FileTreeStore,
) -> BackupPlan:
    """Produce the database payload and metadata for an archive.

    Raises:
        ArchiveError: If the database payload cannot be produced.
        ToolResolutionError: If pg_dump cannot be started.
    """
    backup_date = now_utc()
    schemas: list[str] = []
    archive_format = ArchiveFormat.FILES_ONLY
    if backup_type.includes_database:
        schemas = ["public", *(schema for _, _, schema in await tenant_schemas(database))]
        archive_format = (
            ArchiveFormat.PG_DUMP_SQL if settings.uses_pg_dump else ArchiveFormat.ROW_SNAPSHOT
        )

    metadata = BackupMetadata(
        format=archive_format,
        backup_type=backup_type,
        backup_date=format_iso(backup_date),
        schemas=schemas,
        database_version=await database_version(database),
        includes_database=backup_type.includes_database,
        includes_project_files=backup_type.includes_files,
    )
    plan = BackupPlan(
        backup_type=backup_type,
        metadata=metadata,
        filename=f"{backup_type.filename_prefix}_{backup_date:%Y-%m-%d_%H-%M-%S}.zip",
        file_store=file_store if backup_type.includes_files else None,
    )

    if archive_format is ArchiveFormat.PG_DUMP_SQL:
        plan.workdir = Path(tempfile.mkdtemp(prefix="tenantcore-backup-"))
        plan.sql_file = plan.workdir / SQL_ENTRY
        try:
            await pg_service.create_dump(invoker, settings.database_url, schemas, plan.sql_file)
        except BaseException:
            plan.cleanup()
            raise
    elif archive_format is ArchiveFormat.ROW_SNAPSHOT:
        plan.snapshot = await capture_snapshot(database)
    return plan


def stream_archive(plan: BackupPlan) -> Iterator[bytes]:
    """Yield the zip archive for ``plan`` chunk by chunk."""
    sink = _ChunkSink()
    try:
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(METADATA_ENTRY, plan.metadata.model_dump_json(by_alias=True, indent=2))
            yield sink.drain()

            if plan.sql_file is not None:
                with plan.sql_file.open("rb") as source:
                    yield from _copy_entry(archive, sink, SQL_ENTRY, source)
            if plan.snapshot is not None:
                archive.writestr(SNAPSHOT_ENTRY, plan.snapshot.model_dump_json(by_alias=True))
                yield sink.drain()

            if plan.file_store is not None:
                file_count = 0
                for rel_path, path in plan.file_store.iter_files():
                    try:
                        source = _spool_file(path)
                    except OSError as exc:
                        logger.warning("Skipping unreadable file %s: %s", path, exc)
                        plan.skipped_files.append(rel_path)
                        continue
                    with source:
                        yield from _copy_entry(archive, sink, FILES_PREFIX + rel_path, source)
                    file_count += 1
                logger.info("Archived %d project files", file_count)

            if plan.skipped_files:
                warnings = BackupWarnings(skipped_files=plan.skipped_files)
                archive.writestr(WARNINGS_ENTRY, warnings.model_dump_json(by_alias=True, indent=2))
        yield sink.drain()
    except Exception as exc:
        # Headers are already sent; the client only sees a truncated download.
        logger.error("Backup archive stream %s failed: %s", plan.filename, exc, exc_info=exc)
        raise ArchiveError(f"Archive stream failed: {exc}") from exc
    finally:
        plan.cleanup()
    logger.info("Backup %s streamed (%d files skipped)", plan.filename, len(plan.skipped_files))


def _spool_file(path: Path) -> IO[bytes]:
    """Copy a file aside so read errors surface before its zip entry is started."""
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    try:
        with path.open("rb") as source:
            shutil.copyfileobj(source, spool, CHUNK_SIZE)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool


def _copy_entry(
    archive: zipfile.ZipFile, sink: _ChunkSink, arcname: str, source: IO[bytes]
) -> Iterator[bytes]:
    with archive.open(arcname, mode="w", force_zip64=True) as entry:
        while chunk := source.read(CHUNK_SIZE):
            entry.write(chunk)
            yield sink.drain()
