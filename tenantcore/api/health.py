"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.api.deps import get_database, get_session
from tenantcore.database import Database
from tenantcore.models.project import Project

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    dialect: str
    projects: int | None = None


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    database: Annotated[Database, Depends(get_database)],
) -> HealthResponse:
    """Report database reachability and how many tenant projects exist."""
    projects: int | None = None
    try:
        projects = await session.scalar(select(func.count()).select_from(Project))
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)

    return HealthResponse(
        status="ok" if projects is not None else "degraded",
        version="0.1.0",
        database="ok" if projects is not None else "error",
        dialect=database.dialect_name,
        projects=projects,
    )
