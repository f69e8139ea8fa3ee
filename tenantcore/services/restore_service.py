"""Restore of backup archives.

Main-database rows are applied in ``RESTORE_ORDER`` inside one transaction.
Each row gets its own savepoint, so a bad row is recorded and skipped unless
its table is critical, in which case the whole transaction is rolled back.
Tenant schemas are restored afterwards, one transaction each; a failing
tenant is reported and does not affect the others.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import Integer, delete, exists, inspect, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from tenantcore.exceptions import ProvisionError, RestoreError, RestoreRowError
from tenantcore.services import pg_service
from tenantcore.services.archive_format import FILES_PREFIX
from tenantcore.services.archive_reader import SnapshotPayload, SqlDumpPayload, read_archive
from tenantcore.services.restore_plan import (
    DRIFT_IGNORED_TABLES,
    main_restore_plan,
    tenant_table_spec,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection

    from tenantcore.config import Settings
    from tenantcore.database import Database
    from tenantcore.filesystem.file_store import FileTreeStore
    from tenantcore.services.archive_format import ProjectRows, SystemSnapshot
    from tenantcore.services.archive_reader import DecodedArchive
    from tenantcore.services.restore_plan import TableSpec
    from tenantcore.services.schema_service import SchemaProvisioner
    from tenantcore.tools.invoker import ToolInvoker

logger = logging.getLogger(__name__)


@dataclass
class TableResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class RestoreReport:
    """Structured outcome of a restore. Partial success is the normal case."""

    tables: dict[str, TableResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    projects_restored: int = 0
    database_restored: bool = False
    files_restored: int = 0
    file_errors: list[str] = field(default_factory=list)

    @property
    def rows_restored(self) -> int:
        return sum(result.inserted + result.updated for result in self.tables.values())


def _error_text(exc: BaseException) -> str:
    detail = str(getattr(exc, "orig", None) or exc).strip()
    return detail.splitlines()[0] if detail else type(exc).__name__


class RestoreEngine:
    """Apply decoded backups to the database and the file tree."""

    def __init__(
        self,
        database: Database,
        provisioner: SchemaProvisioner,
        invoker: ToolInvoker,
        settings: Settings,
    ) -> None:
        self._db = database
        self._provisioner = provisioner
        self._invoker = invoker
        self._settings = settings

    async def restore_archive(
        self,
        archive_path: Path,
        file_store: FileTreeStore | None,
        *,
        clear_existing: bool = False,
        restore_database: bool = True,
        restore_files: bool = True,
    ) -> RestoreReport:
        """Restore whatever sections of the archive the caller asked for.

        Raises:
            ArchiveError: If the upload cannot be decoded.
            RestoreError: If the main-database restore was rolled back.
        """
        with tempfile.TemporaryDirectory(prefix="tenantcore-restore-") as workdir:
            decoded = await asyncio.to_thread(read_archive, archive_path, Path(workdir))
            report = RestoreReport()
            if decoded.backup_warnings is not None:
                report.warnings.extend(
                    f"File was skipped at backup time: {path}"
                    for path in decoded.backup_warnings.skipped_files
                )

            if restore_database:
                match decoded.database:
                    case SqlDumpPayload(sql_file=sql_file):
                        if clear_existing:
                            report.warnings.append(
                                "SQL dumps always replace existing data; clearExisting is implied"
                            )
                        await self.restore_sql_dump(sql_file, report)
                    case SnapshotPayload(snapshot=snapshot, legacy=legacy):
                        if legacy:
                            report.warnings.append(
                                f"Restoring legacy backup format version {snapshot.version}"
                            )
                        await self.restore_snapshot(
                            snapshot, clear_existing=clear_existing, report=report
                        )
                    case None:
                        report.warnings.append("Archive contains no database section")

            if restore_files and file_store is not None:
                restored, errors = await asyncio.to_thread(restore_file_tree, decoded, file_store)
                report.files_restored = restored
                report.file_errors = errors
        return report

    async def restore_sql_dump(self, sql_file: Path, report: RestoreReport) -> None:
        if not self._settings.is_postgres:
            msg = "SQL dump archives can only be restored into PostgreSQL"
            raise RestoreError(msg)
        warnings = await pg_service.restore_dump(
            self._invoker, self._settings.database_url, sql_file
        )
        report.warnings.extend(warnings)
        report.database_restored = True

    async def restore_snapshot(
        self,
        snapshot: SystemSnapshot,
        *,
        clear_existing: bool,
        report: RestoreReport | None = None,
    ) -> RestoreReport:
        """Restore the main database, then each tenant schema."""
        if report is None:
            report = RestoreReport()
        await self._restore_main(snapshot.main_database, clear_existing, report)
        report.database_restored = True
        for project in snapshot.project_databases:
            await self._restore_tenant(project, clear_existing, report)
        logger.info(
            "Restored %d rows across %d tables (%d errors, %d warnings)",
            report.rows_restored,
            len(report.tables),
            len(report.errors),
            len(report.warnings),
        )
        return report

    async def _restore_main(
        self,
        tables: dict[str, list[dict[str, Any]]],
        clear_existing: bool,
        report: RestoreReport,
    ) -> None:
        plan = main_restore_plan()
        plan_names = {spec.name for spec in plan}
        async with self._db.engine.connect() as conn:
            live_tables = set(
                await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            )
            await conn.rollback()
            report.warnings.extend(_drift_warnings(set(tables), live_tables, plan_names))

            errors: list[str] = []
            try:
                async with conn.begin():
                    if clear_existing:
                        for spec in reversed(plan):
                            if spec.name in live_tables:
                                await self._clear(conn, spec)
                    for spec in plan:
                        rows = tables.get(spec.name)
                        if rows is None or spec.name not in live_tables:
                            continue
                        report.tables[spec.name] = await self._restore_rows(
                            conn, spec, rows, merge=not clear_existing, errors=errors
                        )
                        await self._reset_sequence(conn, spec)
            except RestoreError:
                logger.error("Main database restore rolled back: %s", errors[-1:])
                raise
            finally:
                report.errors.extend(errors)

    async def _restore_tenant(
        self, project: ProjectRows, clear_existing: bool, report: RestoreReport
    ) -> None:
        label = project.project_name
        try:
            await self._provisioner.ensure_schema(project.schema_name)
            spec = tenant_table_spec(project.schema_name)
            errors: list[str] = []
            async with self._db.engine.connect() as conn, conn.begin():
                if clear_existing:
                    await self._clear(conn, spec)
                result = await self._restore_rows(
                    conn, spec, project.work_orders, merge=not clear_existing, errors=errors
                )
                await self._reset_sequence(conn, spec)
        except (ProvisionError, RestoreError, SQLAlchemyError, ValueError) as exc:
            logger.error("Restore of project %s failed: %s", label, exc)
            report.errors.append(f"{label}: {_error_text(exc)}")
            return
        report.tables[f"{project.schema_name}.{spec.name}"] = result
        report.errors.extend(f"{label}: {error}" for error in errors)
        report.projects_restored += 1

    async def _restore_rows(
        self,
        conn: AsyncConnection,
        spec: TableSpec,
        rows: list[dict[str, Any]],
        *,
        merge: bool,
        errors: list[str],
    ) -> TableResult:
        """Apply rows one by one, folding failures into ``errors``.

        Raises:
            RestoreError: On the first failed row of a critical table.
        """
        result = TableResult()
        for index, row in enumerate(rows, start=1):
            try:
                values = spec.validate_row(row)
                async with conn.begin_nested():
                    outcome = await self._write_row(conn, spec, values, merge=merge)
            except (RestoreRowError, SQLAlchemyError) as exc:
                result.failed += 1
                errors.append(f"{spec.name}: row {index}: {_error_text(exc)}")
                if spec.critical:
                    msg = f"Critical table '{spec.name}' could not be restored; nothing was changed"
                    raise RestoreError(msg, errors) from exc
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)
        if result.failed:
            logger.warning("%s: %d of %d rows failed", spec.name, result.failed, len(rows))
        return result

    async def _write_row(
        self, conn: AsyncConnection, spec: TableSpec, values: dict[str, Any], *, merge: bool
    ) -> str:
        """Insert or upsert one row; return which counter it belongs to."""
        table = spec.table
        primary_key = spec.primary_key
        if not merge or any(values.get(key) is None for key in primary_key):
            await conn.execute(table.insert().values(**values))
            return "inserted"

        existed = await conn.scalar(
            select(exists().where(*(table.c[key] == values[key] for key in primary_key)))
        )
        statement = _dialect_insert(conn.dialect.name, table).values(**values)
        update_columns = [name for name in spec.non_key_columns if name in values]
        if update_columns:
            statement = statement.on_conflict_do_update(
                index_elements=primary_key,
                set_={name: statement.excluded[name] for name in update_columns},
            )
            await conn.execute(statement)
            return "updated" if existed else "inserted"
        await conn.execute(statement.on_conflict_do_nothing(index_elements=primary_key))
        return "skipped" if existed else "inserted"

    async def _clear(self, conn: AsyncConnection, spec: TableSpec) -> None:
        if conn.dialect.name == "postgresql":
            name = conn.dialect.identifier_preparer.format_table(spec.table)
            try:
                async with conn.begin_nested():
                    await conn.execute(text(f"TRUNCATE TABLE {name} CASCADE"))
                return
            except SQLAlchemyError as exc:
                logger.warning("TRUNCATE of %s failed, falling back to DELETE: %s", name, exc)
        await conn.execute(delete(spec.table))

    async def _reset_sequence(self, conn: AsyncConnection, spec: TableSpec) -> None:
        """Move a serial id sequence past the restored ids (PostgreSQL only)."""
        if conn.dialect.name != "postgresql" or len(spec.primary_key) != 1:
            return
        column = spec.table.c[spec.primary_key[0]]
        if not isinstance(column.type, Integer) or not column.autoincrement:
            return
        name = conn.dialect.identifier_preparer.format_table(spec.table)
        await conn.execute(
            text(
                f"SELECT setval(pg_get_serial_sequence(:table, :column), "
                f"COALESCE(MAX({column.name}), 1), MAX({column.name}) IS NOT NULL) FROM {name}"
            ),
            {"table": name, "column": column.name},
        )


def _dialect_insert(dialect_name: str, table: Any) -> Any:
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    msg = f"Merge restore is not supported on {dialect_name}"
    raise ValueError(msg)


def _drift_warnings(backup: set[str], live: set[str], plan: set[str]) -> list[str]:
    warnings = [
        f"Table {name} exists in backup but not in database; skipped"
        for name in sorted(backup - live)
    ]
    warnings.extend(
        f"Table {name} exists in database but not in backup"
        for name in sorted(live - backup - DRIFT_IGNORED_TABLES)
    )
    warnings.extend(
        f"Table {name} is not part of the restore plan; skipped"
        for name in sorted((backup & live) - plan)
    )
    for warning in warnings:
        logger.warning("Schema drift: %s", warning)
    return warnings


def restore_file_tree(decoded: DecodedArchive, file_store: FileTreeStore) -> tuple[int, list[str]]:
    """Write every ``project_files/`` entry below the file-tree root."""
    if not decoded.file_entries:
        return 0, []
    restored = 0
    errors: list[str] = []
    with zipfile.ZipFile(decoded.path) as archive:
        for name in decoded.file_entries:
            rel_path = name[len(FILES_PREFIX) :]
            try:
                file_store.write_relative(rel_path, archive.read(name))
            except (OSError, ValueError, zipfile.BadZipFile) as exc:
                logger.warning("Could not restore file %s: %s", rel_path, exc)
                errors.append(f"{rel_path}: {exc}")
                continue
            restored += 1
    logger.info("Restored %d files (%d errors)", restored, len(errors))
    return restored, errors
