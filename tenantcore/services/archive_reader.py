"""Decode uploaded backups into typed payloads.

``backup_metadata.json`` is read first and its ``format`` tag alone selects
the database payload. Uploads without metadata are the pre-2.0 whole-backup
JSON document, either zipped as ``database_backup.json`` or sent bare.
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ValidationError

from tenantcore.exceptions import ArchiveError
from tenantcore.services.archive_format import (
    FILES_PREFIX,
    METADATA_ENTRY,
    SNAPSHOT_ENTRY,
    SQL_ENTRY,
    WARNINGS_ENTRY,
    ArchiveFormat,
    BackupMetadata,
    BackupWarnings,
    SystemSnapshot,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

LEGACY_VERSION_PREFIX = "1."

M = TypeVar("M", bound=BaseModel)


@dataclass
class SqlDumpPayload:
    sql_file: Path


@dataclass
class SnapshotPayload:
    snapshot: SystemSnapshot
    legacy: bool = False


@dataclass
class DecodedArchive:
    """An archive whose database section (if any) has been decoded."""

    path: Path
    metadata: BackupMetadata | None
    database: SqlDumpPayload | SnapshotPayload | None
    file_entries: list[str] = field(default_factory=list)
    backup_warnings: BackupWarnings | None = None


def read_archive(path: Path, workdir: Path) -> DecodedArchive:
    """Decode the archive at ``path``; large entries are extracted into ``workdir``.

    Raises:
        ArchiveError: If the upload is not a backup this service can read.
    """
    if not zipfile.is_zipfile(path):
        return DecodedArchive(path=path, metadata=None, database=_read_bare_legacy(path))

    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            file_entries = [
                name for name in names if name.startswith(FILES_PREFIX) and not name.endswith("/")
            ]
            warnings = None
            if WARNINGS_ENTRY in names:
                warnings = _parse(BackupWarnings, archive.read(WARNINGS_ENTRY), WARNINGS_ENTRY)

            if METADATA_ENTRY not in names:
                if SNAPSHOT_ENTRY not in names:
                    msg = f"Archive has neither {METADATA_ENTRY} nor a legacy {SNAPSHOT_ENTRY}"
                    raise ArchiveError(msg)
                snapshot = _legacy_snapshot(archive.read(SNAPSHOT_ENTRY))
                return DecodedArchive(
                    path=path,
                    metadata=None,
                    database=SnapshotPayload(snapshot, legacy=True),
                    file_entries=file_entries,
                    backup_warnings=warnings,
                )

            metadata = _parse(BackupMetadata, archive.read(METADATA_ENTRY), METADATA_ENTRY)
            database: SqlDumpPayload | SnapshotPayload | None
            match metadata.format:
                case ArchiveFormat.PG_DUMP_SQL:
                    _require(names, SQL_ENTRY, metadata.format)
                    sql_file = workdir / SQL_ENTRY
                    with archive.open(SQL_ENTRY) as source, sql_file.open("wb") as target:
                        while chunk := source.read(64 * 1024):
                            target.write(chunk)
                    database = SqlDumpPayload(sql_file)
                case ArchiveFormat.ROW_SNAPSHOT:
                    _require(names, SNAPSHOT_ENTRY, metadata.format)
                    snapshot = _parse(SystemSnapshot, archive.read(SNAPSHOT_ENTRY), SNAPSHOT_ENTRY)
                    database = SnapshotPayload(snapshot)
                case ArchiveFormat.FILES_ONLY:
                    database = None
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Corrupt backup archive: {exc}") from exc

    logger.info(
        "Decoded %s backup from %s (version %s, %d files)",
        metadata.format,
        metadata.backup_date,
        metadata.version,
        len(file_entries),
    )
    return DecodedArchive(
        path=path,
        metadata=metadata,
        database=database,
        file_entries=file_entries,
        backup_warnings=warnings,
    )


def _require(names: list[str], entry: str, archive_format: ArchiveFormat) -> None:
    if entry not in names:
        msg = f"Metadata declares format {archive_format} but {entry} is missing"
        raise ArchiveError(msg)


def _parse(model: type[M], raw: bytes, entry: str) -> M:
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise ArchiveError(f"Invalid {entry}: {exc.error_count()} validation errors") from exc


def _legacy_snapshot(raw: bytes) -> SystemSnapshot:
    snapshot = _parse(SystemSnapshot, raw, SNAPSHOT_ENTRY)
    if not snapshot.version.startswith(LEGACY_VERSION_PREFIX):
        msg = f"Unsupported backup version {snapshot.version!r} without {METADATA_ENTRY}"
        raise ArchiveError(msg)
    return snapshot


def _read_bare_legacy(path: Path) -> SnapshotPayload:
    raw = path.read_bytes()
    try:
        json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ArchiveError("Upload is neither a zip archive nor a JSON backup") from exc
    return SnapshotPayload(_legacy_snapshot(raw), legacy=True)
