"""Backup archive layout shared by the builder and the reader.

Zip entries:

- ``backup_metadata.json``: always present in current archives; its
  ``format`` tag decides how the rest is decoded.
- ``database_backup.sql``: plain pg_dump output (format ``pg_dump_sql``).
- ``database_backup.json``: row snapshot (format ``row_snapshot``), or the
  whole backup in archives written before metadata existed.
- ``project_files/<relative path>``: the tenant file tree.
- ``backup_warnings.json``: files that could not be read at backup time.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field

from tenantcore.schemas.common import CamelModel

ARCHIVE_VERSION = "2.1"

METADATA_ENTRY = "backup_metadata.json"
SQL_ENTRY = "database_backup.sql"
SNAPSHOT_ENTRY = "database_backup.json"
WARNINGS_ENTRY = "backup_warnings.json"
FILES_PREFIX = "project_files/"


class BackupType(StrEnum):
    DATABASE = "database"
    FILES = "files"
    FULL = "full"

    @property
    def includes_database(self) -> bool:
        return self is not BackupType.FILES

    @property
    def includes_files(self) -> bool:
        return self is not BackupType.DATABASE

    @property
    def filename_prefix(self) -> str:
        return {"database": "db_backup", "files": "files_backup", "full": "full_backup"}[self.value]


class ArchiveFormat(StrEnum):
    PG_DUMP_SQL = "pg_dump_sql"
    ROW_SNAPSHOT = "row_snapshot"
    FILES_ONLY = "project_files_only"


class BackupMetadata(CamelModel):
    version: str = ARCHIVE_VERSION
    format: ArchiveFormat
    backup_type: BackupType
    backup_date: str
    schemas: list[str] = Field(default_factory=list)
    database_version: str | None = None
    includes_database: bool
    includes_project_files: bool


class BackupWarnings(CamelModel):
    skipped_files: list[str] = Field(default_factory=list)
    reason: str = "Files could not be read (locked or permission denied)"


class ProjectRows(CamelModel):
    """Work orders of one tenant schema."""

    project_id: int
    project_name: str
    schema_name: str
    work_orders: list[dict[str, Any]] = Field(default_factory=list)


class SystemSnapshot(CamelModel):
    """Row-level copy of the main database plus every tenant's work orders.

    Archives from before metadata existed store exactly this document
    (version ``1.x``) as their only database payload.
    """

    version: str = ARCHIVE_VERSION
    backup_date: str
    main_database: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    project_databases: list[ProjectRows] = Field(default_factory=list)
