"""Restore ordering and per-table row schemas.

``RESTORE_ORDER`` lists main-database tables parents first. Inserts follow it,
clears follow it in reverse. When a model gains a foreign key, its table must
stay after the referenced table here; ``tests/test_services/test_restore_plan.py``
checks this against the model metadata.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime

from tenantcore.exceptions import RestoreRowError
from tenantcore.models.base import Base
from tenantcore.models.work_order import work_orders_table
from tenantcore.services.datetime_service import parse_datetime, to_utc

if TYPE_CHECKING:
    from sqlalchemy import Table
    from sqlalchemy.types import TypeEngine

RESTORE_ORDER: tuple[str, ...] = (
    "subroles",
    "permissions",
    "subrole_permissions",
    "user_groups",
    "projects",
    "system_settings",
    "work_order_statuses",
    "trouble_codes",
    "meter_types",
    "service_types",
    "users",
    "meter_type_projects",
    "user_projects",
    "user_group_members",
    "user_group_projects",
)

# Identity/ownership tables: one bad row aborts the whole main restore.
CRITICAL_TABLES = frozenset({"users", "projects", "subroles"})

# Live tables that are never part of a backup and never worth a drift warning.
DRIFT_IGNORED_TABLES = frozenset({"sessions", "drizzle_migrations", "alembic_version"})


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: TypeEngine[Any]
    primary_key: bool
    nullable: bool


@dataclass(frozen=True)
class TableSpec:
    """Typed description of one restorable table."""

    name: str
    table: Table
    critical: bool = False

    @classmethod
    def from_table(cls, table: Table, *, critical: bool = False) -> TableSpec:
        return cls(name=table.name, table=table, critical=critical)

    @property
    def columns(self) -> dict[str, ColumnSpec]:
        return {
            column.name: ColumnSpec(
                name=column.name,
                type=column.type,
                primary_key=column.primary_key,
                nullable=bool(column.nullable),
            )
            for column in self.table.columns
        }

    @property
    def primary_key(self) -> list[str]:
        return [column.name for column in self.table.primary_key.columns]

    @property
    def non_key_columns(self) -> list[str]:
        keys = set(self.primary_key)
        return [column.name for column in self.table.columns if column.name not in keys]

    def validate_row(self, row: object) -> dict[str, Any]:
        """Check a decoded row against this table and coerce JSON values.

        Raises:
            RestoreRowError: On a non-object row or a column the table lacks.
        """
        if not isinstance(row, Mapping):
            raise RestoreRowError(self.name, f"expected an object, got {type(row).__name__}")
        columns = self.columns
        unknown = sorted(str(key) for key in row if key not in columns)
        if unknown:
            raise RestoreRowError(self.name, f"unknown columns: {', '.join(unknown)}")
        values: dict[str, Any] = {}
        for key, value in row.items():
            column = columns[key]
            if isinstance(column.type, DateTime) and isinstance(value, str):
                try:
                    value = to_utc(parse_datetime(value))
                except ValueError as exc:
                    raise RestoreRowError(self.name, f"{key}: invalid timestamp {value!r}") from exc
            elif isinstance(value, datetime):
                value = to_utc(value)
            values[key] = value
        return values


def main_restore_plan() -> list[TableSpec]:
    """Main-database tables in insert order."""
    return [
        TableSpec.from_table(Base.metadata.tables[name], critical=name in CRITICAL_TABLES)
        for name in RESTORE_ORDER
    ]


def tenant_table_spec(schema_name: str) -> TableSpec:
    return TableSpec.from_table(work_orders_table(schema_name))
