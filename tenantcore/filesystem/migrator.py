"""Lazy reconciliation of legacy folder layouts into the canonical layout.

Nothing here takes a lock. Concurrent runs over the same folders are safe
because every step checks the destination first and a canonical file always
wins over its legacy duplicate.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tenantcore.exceptions import MigrationError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """What one or more migrations did. File entries are relative to their legacy folder."""

    moved: list[str] = field(default_factory=list)
    deduplicated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    removed_legacy: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.moved or self.deduplicated or self.removed_legacy)


def migrate_folder(
    legacy_dir: Path, canonical_dir: Path, report: MigrationReport | None = None
) -> MigrationReport:
    """Move every file of ``legacy_dir`` into ``canonical_dir``.

    A file already present at the destination is kept and the legacy copy is
    deleted. Files that cannot be moved stay in the legacy folder and are
    reported. Legacy directories are removed only once empty.
    """
    if report is None:
        report = MigrationReport()
    if not legacy_dir.is_dir():
        return report
    legacy_root = legacy_dir.resolve()
    canonical_root = canonical_dir.resolve()
    if canonical_root == legacy_root or canonical_root.is_relative_to(legacy_root):
        # The canonical folder lives inside this candidate; it is not a legacy layout.
        return report

    sources = sorted(path for path in legacy_dir.rglob("*") if path.is_file())
    for source in sources:
        rel_path = source.relative_to(legacy_dir)
        destination = canonical_dir / rel_path
        try:
            if destination.is_file():
                source.unlink()
                report.deduplicated.append(rel_path.as_posix())
            elif destination.exists():
                raise MigrationError(source, f"destination {destination} is not a file")
            else:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(source, destination)
                report.moved.append(rel_path.as_posix())
        except FileNotFoundError:
            # Another request migrated this file first.
            continue
        except MigrationError as exc:
            logger.warning("File migration skipped: %s", exc)
            report.errors.append(str(exc))
        except OSError as exc:
            error = MigrationError(source, str(exc))
            logger.warning("File migration failed, left in place: %s", error)
            report.errors.append(str(error))

    _remove_empty_dirs(legacy_dir, report)
    if report.moved or report.deduplicated:
        logger.info(
            "Migrated %s -> %s (%d moved, %d duplicates removed)",
            legacy_dir,
            canonical_dir,
            len(report.moved),
            len(report.deduplicated),
        )
    return report


def _remove_empty_dirs(legacy_dir: Path, report: MigrationReport) -> None:
    directories = sorted(
        (path for path in legacy_dir.rglob("*") if path.is_dir()),
        key=lambda path: len(path.parts),
        reverse=True,
    )
    directories.append(legacy_dir)
    for directory in directories:
        try:
            if any(directory.iterdir()):
                continue
            directory.rmdir()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Could not remove legacy directory %s: %s", directory, exc)
            continue
        if directory == legacy_dir:
            report.removed_legacy.append(str(legacy_dir))
