"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (infrastructure failures, config validation, etc.). The global handler logs
  the full message at ERROR and returns a generic "Internal server error" (500).
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (bad timestamps, unknown columns, etc.). The global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- The tenant lifecycle errors below carry their own handlers. Most of them are
  never raised to the HTTP layer: they are collected into structured reports
  so a batch keeps going. Only schema DDL and the main restore transaction
  are all-or-nothing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``tenantcore/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class ProvisionError(Exception):
    """Tenant schema DDL failed. Nothing of the schema is left behind."""

    def __init__(self, schema_name: str, message: str) -> None:
        super().__init__(f"Failed to provision schema '{schema_name}': {message}")
        self.schema_name = schema_name


class ToolResolutionError(Exception):
    """An external utility could not be spawned."""

    def __init__(self, tool: str, attempted_path: str | Path, reason: str = "") -> None:
        message = (
            f"PostgreSQL tool '{tool}' could not be executed. Path tried: {attempted_path}. "
            "Install the PostgreSQL client tools or set PG_BIN_PATH to their directory."
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.tool = tool
        self.attempted_path = str(attempted_path)


class ArchiveError(Exception):
    """A backup archive could not be written or decoded."""


class RestoreError(Exception):
    """A restore was aborted and rolled back."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class RestoreRowError(Exception):
    """A single row could not be restored."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"{table}: {message}")
        self.table = table


class ConflictError(Exception):
    """A sync upload is older than the server copy of the record."""

    def __init__(self, record_id: int, server_updated_at: datetime) -> None:
        super().__init__(
            f"Work order {record_id} was modified on the server at {server_updated_at.isoformat()}"
        )
        self.record_id = record_id
        self.server_updated_at = server_updated_at


class MigrationError(Exception):
    """A file could not be moved out of a legacy folder. It stays where it was."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
