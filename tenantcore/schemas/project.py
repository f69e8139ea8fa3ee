"""Project and project file schemas."""

from __future__ import annotations

from pydantic import Field

from tenantcore.schemas.common import CamelModel


class ProjectCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    customer_email: str | None = Field(default=None, max_length=255)


class ProjectResponse(CamelModel):
    id: int
    name: str
    description: str | None = None
    customer_email: str | None = None
    database_name: str | None = None


class StoredFileResponse(CamelModel):
    name: str
    size: int
    modified_at: str


class WorkOrderFilesResponse(CamelModel):
    """Files of one work order; ``migrated`` counts files just moved from a legacy folder."""

    work_order_id: int
    customer_wo_id: str
    files: list[StoredFileResponse]
    migrated: int = 0
    migration_errors: list[str] = Field(default_factory=list)


class ProjectFilesPath(CamelModel):
    path: str = Field(min_length=1, max_length=1024)
