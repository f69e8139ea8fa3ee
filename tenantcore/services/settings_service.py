"""Persisted system settings."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from tenantcore.models.setting import SystemSetting

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tenantcore.config import Settings

logger = logging.getLogger(__name__)

PROJECT_FILES_PATH_KEY = "project_files_path"


async def get_project_files_path(session: AsyncSession, settings: Settings) -> Path:
    """Return the file-tree root, falling back to the configured default."""
    setting = await session.get(SystemSetting, PROJECT_FILES_PATH_KEY)
    if setting is None or not setting.value.strip():
        return settings.project_files_dir
    return Path(setting.value)


async def set_project_files_path(session: AsyncSession, value: str) -> Path:
    """Persist a new file-tree root and make sure the directory exists."""
    cleaned = value.strip()
    if not cleaned:
        msg = "Project files path must not be empty"
        raise ValueError(msg)
    path = Path(cleaned)
    if path.exists() and not path.is_dir():
        msg = f"Project files path is not a directory: {cleaned}"
        raise ValueError(msg)
    path.mkdir(parents=True, exist_ok=True)

    setting = await session.get(SystemSetting, PROJECT_FILES_PATH_KEY)
    if setting is None:
        session.add(
            SystemSetting(
                key=PROJECT_FILES_PATH_KEY,
                value=cleaned,
                description="Root directory for project file storage",
            )
        )
    else:
        setting.value = cleaned
    await session.commit()
    logger.info("Project files path set to %s", cleaned)
    return path
