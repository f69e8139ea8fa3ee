"""Shared API dependencies: database, services, caller identity."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.config import Settings
from tenantcore.database import Database
from tenantcore.filesystem.file_store import FileTreeStore
from tenantcore.models.project import Project
from tenantcore.models.user import User
from tenantcore.services.restore_service import RestoreEngine
from tenantcore.services.schema_service import SchemaProvisioner
from tenantcore.services.settings_service import get_project_files_path
from tenantcore.services.sync_service import MobileSyncCoordinator, caller_can_access
from tenantcore.tools.invoker import ToolInvoker


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_database(request: Request) -> Database:
    database: Database = request.app.state.database
    return database


def get_invoker(request: Request) -> ToolInvoker:
    invoker: ToolInvoker = request.app.state.invoker
    return invoker


def get_provisioner(request: Request) -> SchemaProvisioner:
    provisioner: SchemaProvisioner = request.app.state.provisioner
    return provisioner


def get_restore_engine(request: Request) -> RestoreEngine:
    engine: RestoreEngine = request.app.state.restore_engine
    return engine


def get_sync_coordinator(request: Request) -> MobileSyncCoordinator:
    coordinator: MobileSyncCoordinator = request.app.state.sync_coordinator
    return coordinator


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        yield session


async def get_file_store(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> FileTreeStore:
    """File tree rooted at the persisted project files path."""
    return FileTreeStore(root=await get_project_files_path(session, settings))


async def get_current_user(
    session: Annotated[AsyncSession, Depends(get_session)],
    x_user_id: Annotated[str | None, Header()] = None,
) -> User:
    """Resolve the caller from the ``X-User-Id`` header set by the upstream gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    user = await session.get(User, x_user_id)
    if user is None or user.is_locked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


async def require_admin(
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    """Require admin role. Raises 403 if not admin."""
    if user.role not in settings.admin_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def get_accessible_project(
    project_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Project:
    """Load a project the caller is assigned to; 404 either way to avoid leaking ids."""
    project = await session.get(Project, project_id)
    if project is None or not await caller_can_access(
        session, user, project_id, settings.admin_roles
    ):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project
