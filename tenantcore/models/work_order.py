"""Per-tenant ``work_orders`` table.

Every tenant schema holds its own copy of this table, so it is defined as a
Core ``Table`` bound to a schema-specific ``MetaData`` rather than an ORM
class on the main ``Base``. Ids referring to main-database rows (users,
groups) are plain columns: cross-schema foreign keys do not survive a
per-tenant restore.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, func

WORK_ORDERS_TABLE = "work_orders"

# Columns a client may never set directly.
IMMUTABLE_COLUMNS = frozenset(
    {"id", "created_at", "updated_at", "created_by_id", "updated_by_id"}
)


@lru_cache(maxsize=256)
def work_orders_table(schema_name: str) -> Table:
    """Return the ``work_orders`` table bound to ``schema_name``."""
    metadata = MetaData(schema=schema_name)
    return Table(
        WORK_ORDERS_TABLE,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("customer_wo_id", String(100), nullable=False, unique=True),
        Column("customer_id", String(100)),
        Column("customer_name", String(255)),
        Column("address", String(500)),
        Column("city", String(100)),
        Column("state", String(50)),
        Column("zip", String(20)),
        Column("phone", String(50)),
        Column("email", String(255)),
        Column("route", String(100)),
        Column("zone", String(100)),
        Column("service_type", String(50)),
        Column("old_meter_id", String(100)),
        Column("old_meter_reading", Integer),
        Column("new_meter_id", String(100)),
        Column("new_meter_reading", Integer),
        Column("old_gps", String(100)),
        Column("new_gps", String(100)),
        Column("status", String(50), nullable=False, server_default="Open"),
        Column("scheduled_at", DateTime(timezone=True)),
        Column("assigned_user_id", String),
        Column("assigned_group_id", Integer),
        Column("trouble", String(50)),
        Column("notes", Text),
        Column("created_by_id", String),
        Column("updated_by_id", String),
        Column("completed_at", DateTime(timezone=True)),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    )
