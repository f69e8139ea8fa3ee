"""Project (tenant) lifecycle: row plus provisioned schema."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from tenantcore.exceptions import ProvisionError
from tenantcore.models.project import Project
from tenantcore.models.work_order import work_orders_table

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tenantcore.database import Database
    from tenantcore.services.schema_service import SchemaProvisioner

logger = logging.getLogger(__name__)


async def create_project(
    session: AsyncSession,
    provisioner: SchemaProvisioner,
    *,
    name: str,
    description: str | None = None,
    customer_email: str | None = None,
) -> Project:
    """Insert a project and provision its schema; neither survives without the other."""
    cleaned = name.strip()
    if not cleaned:
        msg = "Project name must not be empty"
        raise ValueError(msg)

    project = Project(name=cleaned, description=description, customer_email=customer_email)
    session.add(project)
    await session.flush()

    try:
        schema_name = await provisioner.create_schema(cleaned, project.id)
    except ProvisionError:
        await session.rollback()
        raise

    project.database_name = schema_name
    try:
        await session.commit()
    except SQLAlchemyError:
        logger.error("Failed to save project %s, dropping schema %s", cleaned, schema_name)
        await session.rollback()
        await provisioner.delete_schema(schema_name)
        raise
    await session.refresh(project)
    logger.info("Created project %d (%s) with schema %s", project.id, cleaned, schema_name)
    return project


async def delete_project(
    session: AsyncSession, provisioner: SchemaProvisioner, project_id: int
) -> bool:
    """Drop a project's schema and row. Returns False if the project did not exist."""
    project = await session.get(Project, project_id)
    if project is None:
        return False
    if project.database_name:
        await provisioner.delete_schema(project.database_name)
    await session.delete(project)
    await session.commit()
    logger.info("Deleted project %d", project_id)
    return True


async def work_order_key(database: Database, project: Project, work_order_id: int) -> str | None:
    """Return the customer work order id used to name a work order's folder."""
    if not project.database_name:
        return None
    table = work_orders_table(project.database_name)
    async with database.engine.connect() as conn:
        return await conn.scalar(
            select(table.c.customer_wo_id).where(table.c.id == work_order_id)
        )
