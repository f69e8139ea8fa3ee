"""Tests for tenant schema provisioning."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tenantcore.exceptions import ProvisionError
from tenantcore.models.project import Project
from tenantcore.models.work_order import work_orders_table
from tenantcore.services.project_service import create_project, delete_project
from tenantcore.services.schema_service import (
    SchemaProvisioner,
    sanitize_schema_name,
    validate_schema_name,
)

if TYPE_CHECKING:
    from tenantcore.database import Database

PROPERTY_SETTINGS = settings(
    max_examples=300,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_IDS = st.integers(min_value=0, max_value=10**9)


class TestSanitizeSchemaName:
    def test_basic_name(self) -> None:
        assert sanitize_schema_name("Acme Water", 7) == "project_acme_water_7"

    def test_symbols_collapse_to_single_underscore(self) -> None:
        result = sanitize_schema_name("  North--East / Zone #4 ", 12)
        assert result == "project_north_east_zone_4_12"

    def test_empty_after_sanitizing_falls_back(self) -> None:
        assert sanitize_schema_name("!!!", 3) == "project_tenant_3"

    def test_long_names_truncated(self) -> None:
        result = sanitize_schema_name("x" * 200, 1)
        assert result == f"project_{'x' * 50}_1"

    @pytest.mark.parametrize("project_id", [12345, 12346, 10**9])
    def test_long_names_fit_identifier_limit(self, project_id: int) -> None:
        result = sanitize_schema_name("x" * 60, project_id)
        assert len(result) == 63
        assert result.endswith(f"_{project_id}")
        assert validate_schema_name(result) == result

    def test_negative_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            sanitize_schema_name("acme", -1)

    @PROPERTY_SETTINGS
    @given(name=st.text(max_size=120), project_id=_IDS)
    def test_only_safe_characters(self, name: str, project_id: int) -> None:
        result = sanitize_schema_name(name, project_id)
        assert re.fullmatch(r"[A-Za-z0-9_]+", result)
        assert result.endswith(f"_{project_id}")
        assert len(result) <= 63
        assert validate_schema_name(result) == result

    @PROPERTY_SETTINGS
    @given(
        first=st.text(max_size=60),
        second=st.text(max_size=60),
        ids=st.sets(_IDS, min_size=2, max_size=2),
    )
    def test_distinct_ids_never_collide(self, first: str, second: str, ids: set[int]) -> None:
        first_id, second_id = sorted(ids)
        assert sanitize_schema_name(first, first_id) != sanitize_schema_name(second, second_id)

    @PROPERTY_SETTINGS
    @given(prefix=st.text(max_size=60), ids=st.sets(_IDS, min_size=2, max_size=5))
    def test_shared_prefix_still_unique(self, prefix: str, ids: set[int]) -> None:
        names = {sanitize_schema_name(prefix, project_id) for project_id in ids}
        assert len(names) == len(ids)


class TestValidateSchemaName:
    @pytest.mark.parametrize("name", ["project_acme_1", "public", "a"])
    def test_accepts_identifiers(self, name: str) -> None:
        assert validate_schema_name(name) == name

    @pytest.mark.parametrize("name", ["", "1abc", 'x"; DROP', "UPPER", "a" * 64, "a-b"])
    def test_rejects_unsafe(self, name: str) -> None:
        with pytest.raises(ValueError, match="Invalid schema name"):
            validate_schema_name(name)


class TestSchemaProvisioner:
    async def test_create_schema_builds_work_orders(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        schema_name = await provisioner.create_schema("Acme Water", 1)
        assert schema_name == "project_acme_water_1"
        assert await provisioner.schema_exists(schema_name)
        table = work_orders_table(schema_name)
        async with database.engine.connect() as conn:
            assert await conn.scalar(select(func.count()).select_from(table)) == 0

    async def test_create_twice_fails(self, provisioner: SchemaProvisioner) -> None:
        await provisioner.create_schema("Acme", 1)
        with pytest.raises(ProvisionError, match="already exists"):
            await provisioner.create_schema("Acme", 1)

    async def test_failed_ddl_leaves_nothing(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        with (
            patch.object(
                type(work_orders_table("project_broken_9").metadata),
                "create_all",
                side_effect=OperationalError("CREATE TABLE", {}, Exception("disk full")),
            ),
            pytest.raises(ProvisionError, match="project_broken_9"),
        ):
            await provisioner.create_schema("Broken", 9)
        assert not await provisioner.schema_exists("project_broken_9")
        assert not database.namespace_path("project_broken_9").exists()

    async def test_delete_schema_is_idempotent(self, provisioner: SchemaProvisioner) -> None:
        schema_name = await provisioner.create_schema("Acme", 1)
        await provisioner.delete_schema(schema_name)
        await provisioner.delete_schema(schema_name)
        await provisioner.delete_schema("project_never_existed_5")
        assert not await provisioner.schema_exists(schema_name)

    async def test_long_name_with_large_id_round_trips(
        self, provisioner: SchemaProvisioner
    ) -> None:
        schema_name = await provisioner.create_schema("x" * 60, 12345)
        assert await provisioner.schema_exists(schema_name)
        await provisioner.delete_schema(schema_name)
        assert not await provisioner.schema_exists(schema_name)

    async def test_ensure_schema_tolerates_existing(self, provisioner: SchemaProvisioner) -> None:
        schema_name = await provisioner.create_schema("Acme", 1)
        await provisioner.ensure_schema(schema_name)
        assert await provisioner.schema_exists(schema_name)

    async def test_attach_existing_registers_project_schemas(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        async with database.session_factory() as session:
            project = await create_project(session, provisioner, name="Acme")
        fresh = type(database)(database.settings)
        fresh.open()
        try:
            async with fresh.session_factory() as session:
                attached = await SchemaProvisioner(fresh).attach_existing(session)
            assert attached == 1
            assert fresh.has_namespace(project.database_name or "")
        finally:
            await fresh.close()


class TestProjectLifecycle:
    async def test_create_project_records_schema(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        async with database.session_factory() as session:
            project = await create_project(session, provisioner, name="  Acme Water ")
        assert project.name == "Acme Water"
        assert project.database_name == f"project_acme_water_{project.id}"
        assert await provisioner.schema_exists(project.database_name)

    async def test_blank_name_rejected(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        async with database.session_factory() as session:
            with pytest.raises(ValueError, match="must not be empty"):
                await create_project(session, provisioner, name="   ")

    async def test_provision_failure_rolls_back_project(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        with patch.object(
            provisioner, "create_schema", side_effect=ProvisionError("project_x_1", "boom")
        ):
            async with database.session_factory() as session:
                with pytest.raises(ProvisionError):
                    await create_project(session, provisioner, name="X")
        async with database.session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Project)) == 0

    async def test_delete_project_drops_schema(
        self, database: Database, provisioner: SchemaProvisioner
    ) -> None:
        async with database.session_factory() as session:
            project = await create_project(session, provisioner, name="Acme")
        schema_name = project.database_name
        assert schema_name is not None
        async with database.session_factory() as session:
            assert await delete_project(session, provisioner, project.id)
            assert not await delete_project(session, provisioner, project.id)
        assert not await provisioner.schema_exists(schema_name)
