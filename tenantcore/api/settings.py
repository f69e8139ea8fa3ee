"""Persisted system settings endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.api.deps import get_session, get_settings, require_admin
from tenantcore.config import Settings
from tenantcore.models.user import User
from tenantcore.schemas.project import ProjectFilesPath
from tenantcore.services.settings_service import get_project_files_path, set_project_files_path

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/project-files-path", response_model=ProjectFilesPath)
async def read_project_files_path(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> ProjectFilesPath:
    return ProjectFilesPath(path=str(await get_project_files_path(session, settings)))


@router.put("/project-files-path", response_model=ProjectFilesPath)
async def update_project_files_path(
    body: ProjectFilesPath,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> ProjectFilesPath:
    """Change the file-tree root. Existing files are not moved."""
    path = await set_project_files_path(session, body.path)
    return ProjectFilesPath(path=str(path))
