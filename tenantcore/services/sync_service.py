"""Mobile sync: bulk download and conflict-checked upload of work orders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from tenantcore.exceptions import ConflictError, RestoreRowError
from tenantcore.models.project import UserGroupProject, UserProject
from tenantcore.models.reference import (
    MeterType,
    MeterTypeProject,
    ServiceType,
    TroubleCode,
    WorkOrderStatus,
)
from tenantcore.models.work_order import IMMUTABLE_COLUMNS, work_orders_table
from tenantcore.services.datetime_service import (
    format_iso,
    next_timestamp,
    now_utc,
    parse_datetime,
    to_utc,
)
from tenantcore.services.restore_plan import tenant_table_spec

if TYPE_CHECKING:
    from sqlalchemy.engine import RowMapping
    from sqlalchemy.ext.asyncio import AsyncSession

    from tenantcore.config import Settings
    from tenantcore.database import Database
    from tenantcore.models.project import Project
    from tenantcore.models.user import User

logger = logging.getLogger(__name__)


class RecordStatus(StrEnum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class DownloadQuery:
    last_sync: datetime | None = None
    assigned_user_id: str | None = None
    assigned_group_id: int | None = None
    status: str | None = None
    limit: int = 500
    offset: int = 0


@dataclass
class DownloadResult:
    server_timestamp: datetime
    records: list[dict[str, Any]]
    reference_data: dict[str, list[dict[str, Any]]]
    total: int
    limit: int
    offset: int
    is_incremental: bool

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total


@dataclass
class Mutation:
    """One client edit. ``client_updated_at`` is the row's ``updatedAt`` as last seen."""

    id: int
    fields: dict[str, Any]
    client_updated_at: str | datetime
    force_overwrite: bool = False


@dataclass
class RecordOutcome:
    id: int
    status: RecordStatus
    conflict: bool = False
    message: str | None = None
    server_updated_at: datetime | None = None


@dataclass
class UploadResult:
    server_timestamp: datetime
    results: list[RecordOutcome] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "successful": sum(1 for r in self.results if r.status is RecordStatus.SUCCESS),
            "conflicts": sum(1 for r in self.results if r.status is RecordStatus.CONFLICT),
            "errors": sum(1 for r in self.results if r.status is RecordStatus.ERROR),
        }


def is_conflict(
    server_updated_at: datetime | None, client_updated_at: datetime, *, strict: bool = False
) -> bool:
    """Whether the server copy is newer than what the client last saw.

    Equal timestamps are not a conflict unless ``strict`` is set.
    """
    if server_updated_at is None:
        return False
    server = to_utc(server_updated_at)
    client = to_utc(client_updated_at)
    return server >= client if strict else server > client


def serialize_row(row: RowMapping | dict[str, Any]) -> dict[str, Any]:
    return {
        key: format_iso(value) if isinstance(value, datetime) else value
        for key, value in row.items()
    }


async def caller_can_access(
    session: AsyncSession, caller: User, project_id: int, admin_roles: list[str]
) -> bool:
    """Admins see every project; others need a direct or group assignment."""
    if caller.role in admin_roles:
        return True
    direct = await session.scalar(
        select(func.count())
        .select_from(UserProject)
        .where(UserProject.user_id == caller.id, UserProject.project_id == project_id)
    )
    if direct:
        return True
    if not caller.group_ids:
        return False
    via_group = await session.scalar(
        select(func.count())
        .select_from(UserGroupProject)
        .where(
            UserGroupProject.project_id == project_id,
            UserGroupProject.group_id.in_(caller.group_ids),
        )
    )
    return bool(via_group)


class MobileSyncCoordinator:
    """Serves one project's work orders to disconnected mobile clients."""

    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings

    @property
    def terminal_statuses(self) -> list[str]:
        return self._settings.sync_terminal_statuses

    def _is_admin(self, caller: User) -> bool:
        return caller.role in self._settings.admin_roles

    async def download(
        self, session: AsyncSession, project: Project, caller: User, query: DownloadQuery
    ) -> DownloadResult:
        """Return the caller's open work orders, optionally only those changed since last sync.

        ``server_timestamp`` is taken before reading, so a row changed while
        the query runs is sent again on the next incremental sync rather than
        missed.
        """
        schema_name = _require_schema(project)
        limit = max(1, min(query.limit, self._settings.sync_max_page_size))
        offset = max(0, query.offset)
        server_timestamp = now_utc()

        table = work_orders_table(schema_name)
        conditions = [table.c.status.not_in(self.terminal_statuses)]
        if not self._is_admin(caller):
            visible = [table.c.assigned_user_id == caller.id]
            if caller.group_ids:
                visible.append(table.c.assigned_group_id.in_(caller.group_ids))
            conditions.append(or_(*visible))
        if query.assigned_user_id is not None:
            conditions.append(table.c.assigned_user_id == query.assigned_user_id)
        if query.assigned_group_id is not None:
            conditions.append(table.c.assigned_group_id == query.assigned_group_id)
        if query.status is not None:
            conditions.append(table.c.status == query.status)
        if query.last_sync is not None:
            conditions.append(table.c.updated_at > to_utc(query.last_sync))

        async with self._db.engine.connect() as conn:
            total = await conn.scalar(select(func.count()).select_from(table).where(*conditions))
            rows = (
                await conn.execute(
                    select(table)
                    .where(*conditions)
                    .order_by(table.c.updated_at, table.c.id)
                    .limit(limit)
                    .offset(offset)
                )
            ).mappings().all()

        result = DownloadResult(
            server_timestamp=server_timestamp,
            records=[serialize_row(row) for row in rows],
            reference_data=await self.reference_data(session, project.id),
            total=total or 0,
            limit=limit,
            offset=offset,
            is_incremental=query.last_sync is not None,
        )
        logger.info(
            "Mobile download for project %d by %s: %d of %d records (incremental=%s)",
            project.id,
            caller.id,
            len(result.records),
            result.total,
            result.is_incremental,
        )
        return result

    async def reference_data(
        self, session: AsyncSession, project_id: int
    ) -> dict[str, list[dict[str, Any]]]:
        """Lookup lists a mobile client needs to edit work orders offline."""
        statuses = await session.scalars(
            select(WorkOrderStatus).order_by(WorkOrderStatus.sort_order, WorkOrderStatus.id)
        )
        trouble_codes = await session.scalars(select(TroubleCode).order_by(TroubleCode.code))
        service_types = await session.scalars(select(ServiceType).order_by(ServiceType.code))
        meter_types = await session.scalars(
            select(MeterType)
            .join(MeterTypeProject, MeterTypeProject.meter_type_id == MeterType.id)
            .where(MeterTypeProject.project_id == project_id)
            .order_by(MeterType.label)
        )
        return {
            "statuses": [
                {"id": s.id, "code": s.code, "label": s.label, "color": s.color}
                for s in statuses
            ],
            "troubleCodes": [{"id": t.id, "code": t.code, "label": t.label} for t in trouble_codes],
            "serviceTypes": [{"id": s.id, "code": s.code, "label": s.label} for s in service_types],
            "meterTypes": [
                {"id": m.id, "productId": m.product_id, "label": m.label, "size": m.size}
                for m in meter_types
            ],
        }

    async def upload(
        self, project: Project, caller: User, mutations: list[Mutation]
    ) -> UploadResult:
        """Apply each mutation in its own transaction; one failure never blocks the rest."""
        schema_name = _require_schema(project)
        result = UploadResult(server_timestamp=now_utc())
        for mutation in mutations:
            outcome = await self._apply(schema_name, caller, mutation)
            result.results.append(outcome)
        summary = result.summary()
        logger.info(
            "Mobile upload for project %d by %s: %d ok, %d conflicts, %d errors",
            project.id,
            caller.id,
            summary["successful"],
            summary["conflicts"],
            summary["errors"],
        )
        return result

    async def _apply(self, schema_name: str, caller: User, mutation: Mutation) -> RecordOutcome:
        table = work_orders_table(schema_name)
        try:
            client_updated_at = parse_datetime(mutation.client_updated_at)
            async with self._db.engine.begin() as conn:
                current = (
                    await conn.execute(
                        select(table.c.updated_at, table.c.completed_at)
                        .where(table.c.id == mutation.id)
                        .with_for_update()
                    )
                ).first()
                if current is None:
                    return RecordOutcome(
                        id=mutation.id, status=RecordStatus.ERROR, message="Work order not found"
                    )
                if not mutation.force_overwrite and is_conflict(
                    current.updated_at,
                    client_updated_at,
                    strict=self._settings.sync_strict_conflicts,
                ):
                    raise ConflictError(mutation.id, to_utc(current.updated_at))

                values = self._validate_fields(schema_name, mutation.fields)
                stamp = next_timestamp(current.updated_at)
                values["updated_at"] = stamp
                values["updated_by_id"] = caller.id
                if (
                    values.get("status") in self.terminal_statuses
                    and current.completed_at is None
                    and "completed_at" not in values
                ):
                    values["completed_at"] = stamp
                await conn.execute(update(table).where(table.c.id == mutation.id).values(**values))
        except ConflictError as exc:
            logger.info("Sync conflict: %s", exc)
            return RecordOutcome(
                id=mutation.id,
                status=RecordStatus.CONFLICT,
                conflict=True,
                message="Server has a newer version of this work order",
                server_updated_at=exc.server_updated_at,
            )
        except (RestoreRowError, ValueError) as exc:
            return RecordOutcome(id=mutation.id, status=RecordStatus.ERROR, message=str(exc))
        except SQLAlchemyError as exc:
            logger.error("Sync update of work order %d failed: %s", mutation.id, exc)
            return RecordOutcome(
                id=mutation.id, status=RecordStatus.ERROR, message="Database error while saving"
            )
        return RecordOutcome(id=mutation.id, status=RecordStatus.SUCCESS, server_updated_at=stamp)

    def _validate_fields(self, schema_name: str, fields: dict[str, Any]) -> dict[str, Any]:
        if not fields:
            msg = "No fields to update"
            raise ValueError(msg)
        immutable = sorted(IMMUTABLE_COLUMNS & fields.keys())
        if immutable:
            msg = f"Fields cannot be changed: {', '.join(immutable)}"
            raise ValueError(msg)
        return tenant_table_spec(schema_name).validate_row(fields)


def _require_schema(project: Project) -> str:
    if not project.database_name:
        msg = f"Project {project.id} has no provisioned schema"
        raise ValueError(msg)
    return project.database_name
