"""Backup and restore response schemas."""

from __future__ import annotations

from pydantic import Field

from tenantcore.schemas.common import CamelModel


class TableRestoreResult(CamelModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class RestoreResponse(CamelModel):
    """Per-table counts plus every error and warning met along the way."""

    success: bool
    database_restored: bool
    projects_restored: int
    rows_restored: int
    tables: dict[str, TableRestoreResult] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    files_restored: int = 0
    file_errors: list[str] = Field(default_factory=list)
