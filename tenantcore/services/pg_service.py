"""pg_dump / psql wrappers used by backup and restore."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.engine import make_url

from tenantcore.exceptions import ArchiveError, RestoreError
from tenantcore.services.schema_service import validate_schema_name

if TYPE_CHECKING:
    from pathlib import Path

    from tenantcore.tools.invoker import ToolInvoker, ToolResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PgConnection:
    """Connection parameters in the form the libpq command-line tools expect."""

    host: str | None
    port: int | None
    user: str | None
    password: str | None
    database: str | None

    @classmethod
    def from_url(cls, database_url: str) -> PgConnection:
        url = make_url(database_url)
        if url.get_backend_name() != "postgresql":
            msg = f"pg_dump requires a PostgreSQL database, got {url.get_backend_name()}"
            raise ValueError(msg)
        return cls(
            host=url.host,
            port=url.port,
            user=url.username,
            password=url.password,
            database=url.database,
        )

    def args(self) -> list[str]:
        args: list[str] = []
        if self.host:
            args += ["-h", self.host]
        if self.port:
            args += ["-p", str(self.port)]
        if self.user:
            args += ["-U", self.user]
        if self.database:
            args += ["-d", self.database]
        return args

    def env(self) -> dict[str, str]:
        """Password goes through the environment, never the command line."""
        return {"PGPASSWORD": self.password} if self.password else {}


def dump_args(connection: PgConnection, schemas: list[str]) -> list[str]:
    """Build pg_dump arguments for a self-restoring, role-independent plain dump."""
    if not schemas:
        msg = "At least one schema is required for a dump"
        raise ValueError(msg)
    args = [
        *connection.args(),
        "--format=plain",
        "--no-owner",
        "--no-privileges",
        "--clean",
        "--if-exists",
    ]
    args.extend(f"--schema={validate_schema_name(schema)}" for schema in schemas)
    return args


async def create_dump(
    invoker: ToolInvoker, database_url: str, schemas: list[str], output_file: Path
) -> ToolResult:
    """Dump ``schemas`` into ``output_file``.

    Raises:
        ArchiveError: If pg_dump fails or times out.
    """
    connection = PgConnection.from_url(database_url)
    result = await invoker.run(
        "pg_dump",
        dump_args(connection, schemas),
        env=connection.env(),
        output_file=output_file,
    )
    for warning in result.warnings:
        logger.warning("pg_dump: %s", warning)
    if not result.success:
        raise ArchiveError("pg_dump failed: " + "; ".join(result.errors))
    logger.info("Dumped schemas %s to %s", ", ".join(schemas), output_file)
    return result


async def restore_dump(invoker: ToolInvoker, database_url: str, sql_file: Path) -> list[str]:
    """Replay a plain SQL dump in one transaction; return psql's warnings.

    Raises:
        RestoreError: If psql reports a fatal error. Nothing is applied.
    """
    connection = PgConnection.from_url(database_url)
    args = [
        *connection.args(),
        "-v",
        "ON_ERROR_STOP=1",
        "--single-transaction",
        "-f",
        str(sql_file),
    ]
    result = await invoker.run("psql", args, env=connection.env())
    if not result.success:
        raise RestoreError("SQL restore failed and was rolled back", result.errors)
    logger.info("Replayed SQL dump %s (%d warnings)", sql_file, len(result.warnings))
    return result.warnings
