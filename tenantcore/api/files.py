"""Work order file endpoints. Every access migrates legacy folders first."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import FileResponse

from tenantcore.api.deps import get_accessible_project, get_database, get_file_store
from tenantcore.database import Database
from tenantcore.filesystem.file_store import FileTreeStore
from tenantcore.filesystem.migrator import MigrationReport
from tenantcore.models.project import Project
from tenantcore.schemas.project import StoredFileResponse, WorkOrderFilesResponse
from tenantcore.services.datetime_service import format_iso
from tenantcore.services.project_service import work_order_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/projects/{project_id}/work-orders/{work_order_id}/files", tags=["files"]
)

MAX_UPLOAD_SIZE = 50 * 1024 * 1024


@dataclass
class _Folder:
    work_order_id: int
    customer_wo_id: str
    path: Path
    migration: MigrationReport


async def _open_folder(
    database: Database, file_store: FileTreeStore, project: Project, work_order_id: int
) -> _Folder:
    key = await work_order_key(database, project, work_order_id)
    if key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work order not found")
    path, report = await asyncio.to_thread(
        file_store.work_order_dir, project.name, project.id, work_order_id, key
    )
    return _Folder(work_order_id, key, path, report)


async def _listing(file_store: FileTreeStore, folder: _Folder) -> WorkOrderFilesResponse:
    files = await asyncio.to_thread(file_store.list_files, folder.path)
    return WorkOrderFilesResponse(
        work_order_id=folder.work_order_id,
        customer_wo_id=folder.customer_wo_id,
        files=[
            StoredFileResponse(name=f.name, size=f.size, modified_at=format_iso(f.modified_at))
            for f in files
        ],
        migrated=len(folder.migration.moved) + len(folder.migration.deduplicated),
        migration_errors=folder.migration.errors,
    )


@router.get("", response_model=WorkOrderFilesResponse)
async def list_files(
    work_order_id: int,
    project: Annotated[Project, Depends(get_accessible_project)],
    database: Annotated[Database, Depends(get_database)],
    file_store: Annotated[FileTreeStore, Depends(get_file_store)],
) -> WorkOrderFilesResponse:
    folder = await _open_folder(database, file_store, project, work_order_id)
    return await _listing(file_store, folder)


@router.post("", response_model=WorkOrderFilesResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    work_order_id: int,
    file: Annotated[UploadFile, File()],
    project: Annotated[Project, Depends(get_accessible_project)],
    database: Annotated[Database, Depends(get_database)],
    file_store: Annotated[FileTreeStore, Depends(get_file_store)],
) -> WorkOrderFilesResponse:
    """Store one file in the work order's folder, replacing a file of the same name."""
    folder = await _open_folder(database, file_store, project, work_order_id)
    content = await file.read(MAX_UPLOAD_SIZE + 1)
    if len(content) > MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    await asyncio.to_thread(file_store.save_file, folder.path, file.filename or "upload", content)
    return await _listing(file_store, folder)


@router.get("/{filename}")
async def download_file(
    work_order_id: int,
    filename: str,
    project: Annotated[Project, Depends(get_accessible_project)],
    database: Annotated[Database, Depends(get_database)],
    file_store: Annotated[FileTreeStore, Depends(get_file_store)],
) -> FileResponse:
    folder = await _open_folder(database, file_store, project, work_order_id)
    path = file_store.resolve_file(folder.path, filename)
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(path, filename=path.name)
