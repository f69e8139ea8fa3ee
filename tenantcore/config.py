"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Tenantcore application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/tenantcore.db"

    # External tools (pg_dump / psql)
    pg_bin_path: Path | None = None
    tool_timeout_seconds: float = Field(default=600, ge=1)

    # Paths
    project_files_dir: Path = Path("./data/project_files")

    # Backup
    backup_dump_format: Literal["auto", "pg_dump", "row_snapshot"] = "auto"

    # Mobile sync
    sync_terminal_statuses: list[str] = Field(default_factory=lambda: ["Completed", "Closed"])
    sync_strict_conflicts: bool = False
    sync_max_page_size: int = Field(default=1000, ge=1)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)

    # Authorization
    admin_roles: list[str] = Field(default_factory=lambda: ["admin"])

    @field_validator("database_url")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        """Map bare ``postgres://`` URLs onto the asyncpg driver."""
        for prefix in ("postgres://", "postgresql://"):
            if value.startswith(prefix):
                return "postgresql+asyncpg://" + value[len(prefix) :]
        return value

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith("postgresql")

    @property
    def uses_pg_dump(self) -> bool:
        """Whether database backups are produced with pg_dump."""
        if self.backup_dump_format == "auto":
            return self.is_postgres
        return self.backup_dump_format == "pg_dump"
