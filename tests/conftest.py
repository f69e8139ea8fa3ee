"""Shared test fixtures for tenantcore."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert

from tenantcore.config import Settings
from tenantcore.database import Database
from tenantcore.filesystem.file_store import FileTreeStore
from tenantcore.main import create_app, init_services
from tenantcore.models.project import UserProject
from tenantcore.models.user import User, UserGroup, UserGroupMember
from tenantcore.models.work_order import work_orders_table
from tenantcore.services.archive_format import BackupType
from tenantcore.services.backup_service import prepare_backup, stream_archive
from tenantcore.services.project_service import create_project
from tenantcore.services.schema_service import SchemaProvisioner

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    from tenantcore.models.project import Project

ADMIN_ID = "admin-1"
ADMIN_HEADERS = {"X-User-Id": ADMIN_ID}
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (database, tenant
    schemas, tool invoker, file root) because ASGITransport does not trigger it.
    """
    app = create_app(settings)
    database = await init_services(app, settings)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        await database.close()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "db" / "test.db"
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        project_files_dir=tmp_path / "project_files",
    )


@pytest.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """Open a fresh SQLite database with all main tables."""
    db = Database(test_settings)
    db.open()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession]:
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def provisioner(database: Database) -> SchemaProvisioner:
    return SchemaProvisioner(database)


@pytest.fixture
def add_user(database: Database) -> Callable[..., Awaitable[User]]:
    """Factory inserting a user, creating any groups it belongs to."""

    async def _add(
        user_id: str,
        *,
        role: str = "user",
        group_ids: tuple[int, ...] = (),
        project_ids: tuple[int, ...] = (),
    ) -> User:
        async with database.session_factory() as session:
            for group_id in group_ids:
                if await session.get(UserGroup, group_id) is None:
                    session.add(UserGroup(id=group_id, name=f"group-{group_id}"))
            session.add(
                User(id=user_id, username=user_id, email=f"{user_id}@example.com", role=role)
            )
            await session.flush()
            for group_id in group_ids:
                session.add(UserGroupMember(group_id=group_id, user_id=user_id))
            for project_id in project_ids:
                session.add(UserProject(user_id=user_id, project_id=project_id))
            await session.commit()
        async with database.session_factory() as session:
            user = await session.get(User, user_id)
            assert user is not None
            return user

    return _add


@pytest.fixture
def add_project(
    database: Database, provisioner: SchemaProvisioner
) -> Callable[..., Awaitable[Project]]:
    async def _add(name: str = "Acme Water") -> Project:
        async with database.session_factory() as session:
            return await create_project(session, provisioner, name=name)

    return _add


@pytest.fixture
def add_work_order(database: Database) -> Callable[..., Awaitable[int]]:
    """Factory inserting a work order into a tenant schema; returns its id."""

    async def _add(schema_name: str, **values: Any) -> int:
        values.setdefault("customer_wo_id", f"WO-{uuid4().hex[:8]}")
        values.setdefault("updated_at", BASE_TIME)
        values.setdefault("created_at", BASE_TIME)
        table = work_orders_table(schema_name)
        async with database.engine.begin() as conn:
            result = await conn.execute(insert(table).values(**values))
            return int(result.inserted_primary_key[0])

    return _add


@pytest.fixture
def build_archive(
    database: Database, test_settings: Settings, tmp_path: Path
) -> Callable[..., Awaitable[Path]]:
    """Factory streaming a backup of the test database to a file; returns its path."""

    async def _build(backup_type: BackupType = BackupType.DATABASE) -> Path:
        plan = await prepare_backup(
            backup_type,
            database=database,
            settings=test_settings,
            invoker=MagicMock(),
            file_store=FileTreeStore(test_settings.project_files_dir),
        )
        target = tmp_path / "archives" / plan.filename
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as out:
            for chunk in stream_archive(plan):
                out.write(chunk)
        return target

    return _build
