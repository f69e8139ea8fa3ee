"""Per-project file tree on disk.

Layout under the configured root::

    <root>/<Project Name>_<project id>/work_orders/<customer work order id>/<files>

Two older layouts are still found in the field and are folded into the
current one on first access:

    <root>/<Project Name>_<project id>/<work order id>/
    <root>/<Project Name>_<project id>/<customer work order id>/
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from tenantcore.filesystem.migrator import MigrationReport, migrate_folder

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)

WORK_ORDERS_DIR = "work_orders"

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.-]+")


def safe_segment(value: str) -> str:
    """Turn an arbitrary label into a single safe path segment."""
    segment = _UNSAFE_SEGMENT.sub("_", value.strip()).strip("._")
    if not segment:
        msg = f"Cannot build a folder name from {value!r}"
        raise ValueError(msg)
    return segment


def project_dir_name(project_name: str, project_id: int) -> str:
    return f"{_UNSAFE_SEGMENT.sub('_', project_name.strip()).strip('._') or 'project'}_{project_id}"


@dataclass
class StoredFile:
    name: str
    size: int
    modified_at: datetime


@dataclass
class FileTreeStore:
    """Reads and writes tenant files below ``root``."""

    root: Path

    def _validate_path(self, rel_path: str) -> Path:
        """Validate that a relative path stays within the root directory.

        Raises ValueError if the resolved path escapes root.
        """
        full_path = (self.root / rel_path.lstrip("/")).resolve()
        if not full_path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path traversal detected: {rel_path}")
        return full_path

    def project_dir(self, project_name: str, project_id: int) -> Path:
        return self.root / project_dir_name(project_name, project_id)

    def work_order_dir(
        self,
        project_name: str,
        project_id: int,
        work_order_id: int,
        customer_wo_id: str,
    ) -> tuple[Path, MigrationReport]:
        """Return the canonical folder of a work order, migrating legacy folders first."""
        project_dir = self.project_dir(project_name, project_id)
        key = safe_segment(customer_wo_id)
        canonical = project_dir / WORK_ORDERS_DIR / key
        report = MigrationReport()
        for legacy in (project_dir / str(work_order_id), project_dir / key):
            migrate_folder(legacy, canonical, report)
        canonical.mkdir(parents=True, exist_ok=True)
        return canonical, report

    def list_files(self, directory: Path) -> list[StoredFile]:
        files = []
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            stat = path.stat()
            files.append(
                StoredFile(
                    name=path.name,
                    size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return files

    def resolve_file(self, directory: Path, filename: str) -> Path:
        """Resolve ``filename`` inside ``directory``; reject anything that is not a bare name."""
        if not filename or filename != safe_segment(filename):
            msg = f"Invalid file name: {filename}"
            raise ValueError(msg)
        return self._validate_path(str((directory / filename).relative_to(self.root)))

    def save_file(self, directory: Path, filename: str, content: bytes) -> Path:
        path = self.resolve_file(directory, safe_segment(filename))
        path.write_bytes(content)
        logger.info("Stored %s (%d bytes)", path, len(content))
        return path

    def iter_files(self) -> Iterator[tuple[str, Path]]:
        """Yield ``(relative posix path, absolute path)`` for every file under root."""
        if not self.root.is_dir():
            return
        for path in sorted(self.root.rglob("*")):
            if path.is_file():
                yield path.relative_to(self.root).as_posix(), path

    def write_relative(self, rel_path: str, content: bytes) -> Path:
        full_path = self._validate_path(rel_path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(content)
        return full_path
