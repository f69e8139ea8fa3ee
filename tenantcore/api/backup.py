"""Backup download and restore endpoints."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from tenantcore.api.deps import (
    get_database,
    get_file_store,
    get_invoker,
    get_restore_engine,
    get_settings,
    require_admin,
)
from tenantcore.config import Settings
from tenantcore.database import Database
from tenantcore.filesystem.file_store import FileTreeStore
from tenantcore.models.user import User
from tenantcore.schemas.backup import RestoreResponse, TableRestoreResult
from tenantcore.services.archive_format import BackupType
from tenantcore.services.backup_service import CHUNK_SIZE, prepare_backup, stream_archive
from tenantcore.services.restore_service import RestoreEngine, RestoreReport
from tenantcore.tools.invoker import ToolInvoker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backup", tags=["backup"])


def _restore_response(report: RestoreReport) -> RestoreResponse:
    return RestoreResponse(
        success=not report.errors and not report.file_errors,
        database_restored=report.database_restored,
        projects_restored=report.projects_restored,
        rows_restored=report.rows_restored,
        tables={
            name: TableRestoreResult(
                inserted=result.inserted,
                updated=result.updated,
                skipped=result.skipped,
                failed=result.failed,
            )
            for name, result in report.tables.items()
        },
        errors=report.errors,
        warnings=report.warnings,
        files_restored=report.files_restored,
        file_errors=report.file_errors,
    )


@router.get("")
async def download_backup(
    database: Annotated[Database, Depends(get_database)],
    settings: Annotated[Settings, Depends(get_settings)],
    invoker: Annotated[ToolInvoker, Depends(get_invoker)],
    file_store: Annotated[FileTreeStore, Depends(get_file_store)],
    user: Annotated[User, Depends(require_admin)],
    backup_type: Annotated[BackupType, Query(alias="type")] = BackupType.FULL,
) -> StreamingResponse:
    """Stream a zip archive of the database, the project files, or both."""
    plan = await prepare_backup(
        backup_type,
        database=database,
        settings=settings,
        invoker=invoker,
        file_store=file_store,
    )
    logger.info("User %s started %s backup %s", user.id, backup_type.value, plan.filename)
    return StreamingResponse(
        stream_archive(plan),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{plan.filename}"'},
        # the body may never start if the client goes away first
        background=BackgroundTask(plan.cleanup),
    )


@router.post("/restore", response_model=RestoreResponse)
async def restore_backup(
    file: Annotated[UploadFile, File()],
    engine: Annotated[RestoreEngine, Depends(get_restore_engine)],
    file_store: Annotated[FileTreeStore, Depends(get_file_store)],
    user: Annotated[User, Depends(require_admin)],
    clear_existing: Annotated[bool, Form(alias="clearExisting")] = False,
    restore_database: Annotated[bool, Form(alias="restoreDatabase")] = True,
    restore_files: Annotated[bool, Form(alias="restoreFiles")] = True,
) -> RestoreResponse:
    """Restore an uploaded archive. Row and file failures are reported, not raised."""
    logger.info(
        "User %s restoring %s (clear=%s, database=%s, files=%s)",
        user.id,
        file.filename,
        clear_existing,
        restore_database,
        restore_files,
    )
    with tempfile.TemporaryDirectory(prefix="tenantcore-upload-") as tmp:
        upload_path = Path(tmp) / "upload"
        with upload_path.open("wb") as out:
            while chunk := await file.read(CHUNK_SIZE):
                out.write(chunk)
        report = await engine.restore_archive(
            upload_path,
            file_store,
            clear_existing=clear_existing,
            restore_database=restore_database,
            restore_files=restore_files,
        )
    return _restore_response(report)
