"""Mobile sync request/response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from tenantcore.schemas.common import CamelModel


class RecordMutation(CamelModel):
    """One edited work order sent by a mobile client."""

    id: int
    fields: dict[str, Any] = Field(default_factory=dict)
    client_updated_at: str
    force_overwrite: bool = False


class UploadRequest(CamelModel):
    records: list[RecordMutation] = Field(max_length=1000)
    client_sync_timestamp: str | None = None


class RecordResult(CamelModel):
    id: int
    status: str
    conflict: bool | None = None
    message: str | None = None
    server_updated_at: str | None = None


class UploadSummary(CamelModel):
    total: int
    successful: int
    conflicts: int
    errors: int


class UploadResponse(CamelModel):
    success: bool
    server_timestamp: str
    results: list[RecordResult]
    summary: UploadSummary


class DownloadMeta(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool
    is_incremental: bool


class DownloadResponse(CamelModel):
    """Work orders plus the lookup lists needed to edit them offline.

    Clients store ``server_timestamp`` and send it back as
    ``lastSyncTimestamp`` on the next incremental download.
    """

    success: bool
    server_timestamp: str
    records: list[dict[str, Any]]
    reference_data: dict[str, list[dict[str, Any]]]
    meta: DownloadMeta
