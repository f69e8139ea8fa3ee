"""Project (tenant) endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.api.deps import (
    get_accessible_project,
    get_provisioner,
    get_session,
    require_admin,
)
from tenantcore.models.project import Project
from tenantcore.models.user import User
from tenantcore.schemas.project import ProjectCreate, ProjectResponse
from tenantcore.services.project_service import create_project, delete_project
from tenantcore.services.schema_service import SchemaProvisioner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


def _project_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        description=project.description,
        customer_email=project.customer_email,
        database_name=project.database_name,
    )


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project_endpoint(
    body: ProjectCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    provisioner: Annotated[SchemaProvisioner, Depends(get_provisioner)],
    user: Annotated[User, Depends(require_admin)],
) -> ProjectResponse:
    """Create a project and provision its tenant schema."""
    project = await create_project(
        session,
        provisioner,
        name=body.name,
        description=body.description,
        customer_email=body.customer_email,
    )
    logger.info("User %s created project %d", user.id, project.id)
    return _project_response(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project_endpoint(
    project: Annotated[Project, Depends(get_accessible_project)],
) -> ProjectResponse:
    return _project_response(project)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project_endpoint(
    project_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    provisioner: Annotated[SchemaProvisioner, Depends(get_provisioner)],
    user: Annotated[User, Depends(require_admin)],
) -> None:
    """Delete a project and drop its tenant schema."""
    if not await delete_project(session, provisioner, project_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    logger.info("User %s deleted project %d", user.id, project_id)
