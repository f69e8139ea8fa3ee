"""Tenant schema provisioning.

Each project owns one schema named ``project_<sanitized name>_<id>`` holding
its ``work_orders`` table.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateSchema, DropSchema

from tenantcore.exceptions import ProvisionError
from tenantcore.models.project import Project
from tenantcore.models.work_order import work_orders_table

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tenantcore.database import Database

logger = logging.getLogger(__name__)

MAX_SANITIZED_LENGTH = 50
# PostgreSQL truncates longer identifiers.
MAX_IDENTIFIER_LENGTH = 63
SCHEMA_PREFIX = "project_"

_UNSAFE_RUN = re.compile(r"[^a-z0-9]+")
_SCHEMA_NAME = re.compile(r"[a-z][a-z0-9_]{0,62}")


def sanitize_schema_name(name: str, project_id: int) -> str:
    """Derive the schema name for a project.

    The numeric id is always the last ``_``-separated segment, so two projects
    whose names sanitize to the same prefix still get distinct schemas.
    """
    if project_id < 0:
        msg = f"project id must be non-negative, got {project_id}"
        raise ValueError(msg)
    suffix = f"_{project_id}"
    limit = min(MAX_SANITIZED_LENGTH, MAX_IDENTIFIER_LENGTH - len(SCHEMA_PREFIX) - len(suffix))
    sanitized = _UNSAFE_RUN.sub("_", name.lower()).strip("_")
    sanitized = sanitized[:limit].rstrip("_") or "tenant"
    return f"{SCHEMA_PREFIX}{sanitized}{suffix}"


def validate_schema_name(schema_name: str) -> str:
    """Reject anything that is not a plain lowercase identifier."""
    if not _SCHEMA_NAME.fullmatch(schema_name):
        msg = f"Invalid schema name: {schema_name!r}"
        raise ValueError(msg)
    return schema_name


class SchemaProvisioner:
    """Create and drop tenant schemas on the given database."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_schema(self, name: str, project_id: int) -> str:
        """Create the schema and base tables for a project; return the schema name.

        Either the schema and all of its tables exist afterwards or nothing
        does.

        Raises:
            ProvisionError: If any DDL statement fails.
        """
        schema_name = sanitize_schema_name(name, project_id)
        await self._create(schema_name, if_not_exists=False)
        logger.info("Provisioned schema %s for project %d", schema_name, project_id)
        return schema_name

    async def ensure_schema(self, schema_name: str) -> None:
        """Create the schema and tables unless they already exist."""
        await self._create(validate_schema_name(schema_name), if_not_exists=True)

    async def delete_schema(self, schema_name: str) -> None:
        """Drop a schema and everything in it. Missing schemas are not an error."""
        validate_schema_name(schema_name)
        try:
            if self._db.is_sqlite:
                self._db.detach_namespace(schema_name)
            else:
                async with self._db.engine.begin() as conn:
                    await conn.execute(DropSchema(schema_name, cascade=True, if_exists=True))
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Failed to drop schema %s: %s", schema_name, exc)
            raise ProvisionError(schema_name, str(exc)) from exc
        logger.info("Dropped schema %s", schema_name)

    async def schema_exists(self, schema_name: str) -> bool:
        if self._db.is_sqlite:
            return self._db.has_namespace(schema_name)
        async with self._db.engine.connect() as conn:
            result = await conn.execute(
                text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :name"),
                {"name": schema_name},
            )
            return result.first() is not None

    async def attach_existing(self, session: AsyncSession) -> int:
        """Register every provisioned project schema with a SQLite database.

        PostgreSQL schemas persist on their own, so this is a no-op there.
        """
        if not self._db.is_sqlite:
            return 0
        result = await session.execute(
            select(Project.database_name).where(Project.database_name.is_not(None))
        )
        count = 0
        for schema_name in result.scalars():
            self._db.attach_namespace(validate_schema_name(schema_name))
            count += 1
        return count

    async def _create(self, schema_name: str, *, if_not_exists: bool) -> None:
        table = work_orders_table(schema_name)
        attached_here = False
        try:
            if self._db.is_sqlite:
                if self._db.has_namespace(schema_name):
                    if not if_not_exists:
                        msg = "schema already exists"
                        raise ProvisionError(schema_name, msg)
                else:
                    self._db.attach_namespace(schema_name)
                    attached_here = True
                async with self._db.engine.begin() as conn:
                    await conn.run_sync(table.metadata.create_all)
            else:
                # PostgreSQL DDL is transactional: a failure rolls back the schema too.
                async with self._db.engine.begin() as conn:
                    await conn.execute(CreateSchema(schema_name, if_not_exists=if_not_exists))
                    await conn.run_sync(table.metadata.create_all)
        except (SQLAlchemyError, OSError, ValueError) as exc:
            logger.error("Failed to provision schema %s: %s", schema_name, exc)
            if attached_here:
                self._db.detach_namespace(schema_name)
            raise ProvisionError(schema_name, str(exc)) from exc
