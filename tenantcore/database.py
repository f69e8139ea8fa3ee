"""Database engine and session management.

The ``Database`` object owns the connection pool. It is opened once by the
application lifespan and passed to every component that needs it.

PostgreSQL is the production backend; tenant schemas are real schemas there.
SQLite is supported for development and tests: each tenant schema is a
separate database file attached to every connection under the schema name,
so schema-qualified statements work unchanged on both backends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tenantcore.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from tenantcore.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Database:
    """Connection pool with an explicit open/close lifecycle."""

    settings: Settings
    _engine: AsyncEngine | None = None
    _session_factory: async_sessionmaker[AsyncSession] | None = None
    _namespaces: dict[str, str] = field(default_factory=dict)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            msg = "Database is not open"
            raise RuntimeError(msg)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            msg = "Database is not open"
            raise RuntimeError(msg)
        return self._session_factory

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.settings.database_url).get_backend_name() == "sqlite"

    @property
    def dialect_name(self) -> str:
        return make_url(self.settings.database_url).get_backend_name()

    def open(self) -> None:
        """Create the engine and session factory."""
        if self._engine is not None:
            return
        if self.is_sqlite:
            db_path = self.sqlite_path
            if db_path is not None:
                db_path.parent.mkdir(parents=True, exist_ok=True)
            # Attached tenant databases are per connection, so every checkout
            # gets a fresh connection that attaches the current namespace set.
            engine = create_async_engine(
                self.settings.database_url, echo=self.settings.debug, poolclass=NullPool
            )
            event.listen(engine.sync_engine, "connect", self._on_sqlite_connect)
            event.listen(engine.sync_engine, "begin", _on_sqlite_begin)
        else:
            engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.debug,
                pool_pre_ping=True,
            )
        self._engine = engine
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Opened %s database", self.dialect_name)

    async def close(self) -> None:
        """Dispose of the pool."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    async def create_tables(self) -> None:
        """Create all main-database tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # ── SQLite tenant namespaces ──

    @property
    def sqlite_path(self) -> Path | None:
        database = make_url(self.settings.database_url).database
        if not database or database == ":memory:":
            return None
        return Path(database)

    def namespace_path(self, schema_name: str) -> Path:
        """Return the file backing a tenant namespace on SQLite."""
        db_path = self.sqlite_path
        if db_path is None:
            msg = "Tenant schemas on SQLite require a file-backed database"
            raise ValueError(msg)
        return db_path.with_name(f"{db_path.stem}.{schema_name}.db")

    def has_namespace(self, schema_name: str) -> bool:
        return schema_name in self._namespaces

    def attach_namespace(self, schema_name: str) -> None:
        """Attach a tenant namespace to every connection opened from now on."""
        self._namespaces[schema_name] = str(self.namespace_path(schema_name))

    def detach_namespace(self, schema_name: str) -> None:
        """Forget a tenant namespace and remove its file."""
        self._namespaces.pop(schema_name, None)
        path = self.namespace_path(schema_name)
        for suffix in ("", "-wal", "-shm"):
            path.with_name(path.name + suffix).unlink(missing_ok=True)

    def _on_sqlite_connect(self, dbapi_connection: Any, _record: object) -> None:
        # Hand transaction control to SQLAlchemy so SAVEPOINT works.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        # Open read transactions must not block commits on other connections.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        for schema_name, path in self._namespaces.items():
            cursor.execute(f'ATTACH DATABASE ? AS "{schema_name}"', (path,))
            cursor.execute(f'PRAGMA "{schema_name}".journal_mode=WAL')
        cursor.close()


def _on_sqlite_begin(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN")

