"""Tests for the Database resource and SQLite tenant namespaces."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text

from tenantcore.config import Settings
from tenantcore.database import Database

if TYPE_CHECKING:
    from pathlib import Path


class TestLifecycle:
    async def test_engine_requires_open(self, test_settings: Settings) -> None:
        db = Database(test_settings)
        with pytest.raises(RuntimeError, match="not open"):
            _ = db.engine
        with pytest.raises(RuntimeError, match="not open"):
            _ = db.session_factory

    async def test_open_creates_parent_directory(self, test_settings: Settings) -> None:
        db = Database(test_settings)
        db.open()
        try:
            assert db.sqlite_path is not None
            assert db.sqlite_path.parent.is_dir()
            assert db.is_sqlite
            assert db.dialect_name == "sqlite"
        finally:
            await db.close()

    async def test_close_is_idempotent(self, test_settings: Settings) -> None:
        db = Database(test_settings)
        db.open()
        await db.close()
        await db.close()
        with pytest.raises(RuntimeError):
            _ = db.engine

    async def test_foreign_keys_enabled(self, database: Database) -> None:
        async with database.engine.connect() as conn:
            assert (await conn.execute(text("PRAGMA foreign_keys"))).scalar() == 1


class TestNamespaces:
    def test_namespace_path_sits_next_to_main_file(self, test_settings: Settings) -> None:
        db = Database(test_settings)
        path = db.namespace_path("project_acme_1")
        assert db.sqlite_path is not None
        assert path.parent == db.sqlite_path.parent
        assert path.name == "test.project_acme_1.db"

    def test_in_memory_database_has_no_namespaces(self) -> None:
        db = Database(Settings(_env_file=None, database_url="sqlite+aiosqlite:///:memory:"))
        with pytest.raises(ValueError, match="file-backed"):
            db.namespace_path("project_x_1")

    async def test_attached_namespace_visible_on_new_connections(self, database: Database) -> None:
        database.attach_namespace("project_acme_1")
        assert database.has_namespace("project_acme_1")
        async with database.engine.begin() as conn:
            await conn.execute(text('CREATE TABLE "project_acme_1".probe (id INTEGER)'))
            await conn.execute(text('INSERT INTO "project_acme_1".probe VALUES (1)'))
        async with database.engine.connect() as conn:
            count = await conn.scalar(text('SELECT count(*) FROM "project_acme_1".probe'))
        assert count == 1
        assert database.namespace_path("project_acme_1").is_file()

    async def test_detach_removes_file(self, database: Database, tmp_path: Path) -> None:
        database.attach_namespace("project_acme_1")
        async with database.engine.begin() as conn:
            await conn.execute(text('CREATE TABLE "project_acme_1".probe (id INTEGER)'))
        path = database.namespace_path("project_acme_1")
        assert path.is_file()
        database.detach_namespace("project_acme_1")
        assert not database.has_namespace("project_acme_1")
        assert not path.exists()
