"""Mobile sync endpoints: bulk download and conflict-checked upload."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.api.deps import (
    get_accessible_project,
    get_current_user,
    get_session,
    get_sync_coordinator,
)
from tenantcore.models.project import Project
from tenantcore.models.user import User
from tenantcore.schemas.sync import (
    DownloadMeta,
    DownloadResponse,
    RecordResult,
    UploadRequest,
    UploadResponse,
    UploadSummary,
)
from tenantcore.services.datetime_service import format_iso, parse_datetime
from tenantcore.services.sync_service import (
    DownloadQuery,
    MobileSyncCoordinator,
    Mutation,
    RecordStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}/mobile", tags=["sync"])


# ── Endpoints ──


@router.get("/sync", response_model=DownloadResponse)
async def download(
    project: Annotated[Project, Depends(get_accessible_project)],
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_session)],
    coordinator: Annotated[MobileSyncCoordinator, Depends(get_sync_coordinator)],
    last_sync_timestamp: Annotated[str | None, Query(alias="lastSyncTimestamp")] = None,
    assigned_user_id: Annotated[str | None, Query(alias="assignedUserId")] = None,
    assigned_group_id: Annotated[int | None, Query(alias="assignedGroupId")] = None,
    status: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 500,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DownloadResponse:
    """Download open work orders, optionally only those changed since the last sync."""
    query = DownloadQuery(
        last_sync=parse_datetime(last_sync_timestamp) if last_sync_timestamp else None,
        assigned_user_id=assigned_user_id,
        assigned_group_id=assigned_group_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    result = await coordinator.download(session, project, user, query)
    return DownloadResponse(
        success=True,
        server_timestamp=format_iso(result.server_timestamp),
        records=result.records,
        reference_data=result.reference_data,
        meta=DownloadMeta(
            total=result.total,
            limit=result.limit,
            offset=result.offset,
            has_more=result.has_more,
            is_incremental=result.is_incremental,
        ),
    )


@router.post("/sync", response_model=UploadResponse)
async def upload(
    body: UploadRequest,
    project: Annotated[Project, Depends(get_accessible_project)],
    user: Annotated[User, Depends(get_current_user)],
    coordinator: Annotated[MobileSyncCoordinator, Depends(get_sync_coordinator)],
) -> UploadResponse:
    """Apply a batch of offline edits; each record succeeds or fails on its own."""
    mutations = [
        Mutation(
            id=record.id,
            fields=record.fields,
            client_updated_at=record.client_updated_at,
            force_overwrite=record.force_overwrite,
        )
        for record in body.records
    ]
    result = await coordinator.upload(project, user, mutations)
    summary = result.summary()
    return UploadResponse(
        success=summary["errors"] == 0,
        server_timestamp=format_iso(result.server_timestamp),
        results=[
            RecordResult(
                id=outcome.id,
                status=outcome.status.value,
                conflict=True if outcome.status is RecordStatus.CONFLICT else None,
                message=outcome.message,
                server_updated_at=(
                    format_iso(outcome.server_updated_at) if outcome.server_updated_at else None
                ),
            )
            for outcome in result.results
        ],
        summary=UploadSummary(**summary),
    )
