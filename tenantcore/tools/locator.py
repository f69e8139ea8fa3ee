"""Executable discovery for the PostgreSQL client tools.

One locator per platform, chosen once at startup by ``default_locator``.
Resolution order: explicit override directory, ``PATH``, well-known install
locations, then the bare command name (failure is deferred to spawn time).
"""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class ToolLocator:
    """Resolve a tool name to the path that should be executed."""

    executable_suffix = ""

    def __init__(self, override_dir: Path | None = None) -> None:
        self._override_dir = override_dir

    def well_known_dirs(self) -> list[Path]:
        """Platform-specific install locations, most recent version first."""
        return []

    def resolve(self, tool: str) -> str:
        """Return an absolute path for ``tool``, or the bare name as a last resort."""
        filename = tool + self.executable_suffix

        if self._override_dir is not None:
            candidate = self._override_dir / filename
            if candidate.is_file():
                logger.debug("Resolved %s from override directory: %s", tool, candidate)
                return str(candidate)
            logger.warning("%s not found in PG_BIN_PATH=%s", filename, self._override_dir)

        found = shutil.which(tool)
        if found:
            logger.debug("Resolved %s from PATH: %s", tool, found)
            return found

        for directory in self.well_known_dirs():
            candidate = directory / filename
            if candidate.is_file():
                logger.debug("Resolved %s from well-known location: %s", tool, candidate)
                return str(candidate)

        logger.warning("Could not locate %s, falling back to bare command name", tool)
        return tool


class PosixToolLocator(ToolLocator):
    def well_known_dirs(self) -> list[Path]:
        dirs = [Path("/usr/bin"), Path("/usr/local/bin")]
        dirs.extend(Path(f"/usr/lib/postgresql/{v}/bin") for v in range(17, 13, -1))
        dirs.extend([Path("/opt/homebrew/bin"), Path("/usr/local/opt/libpq/bin")])
        return dirs


class WindowsToolLocator(ToolLocator):
    executable_suffix = ".exe"

    def well_known_dirs(self) -> list[Path]:
        dirs = [Path(rf"C:\Program Files\PostgreSQL\{v}\bin") for v in range(19, 12, -1)]
        dirs.extend(
            Path(rf"C:\Program Files (x86)\PostgreSQL\{v}\bin") for v in range(19, 13, -1)
        )
        return dirs


def default_locator(override_dir: Path | None = None) -> ToolLocator:
    """Return the locator for the running platform."""
    if sys.platform == "win32":
        return WindowsToolLocator(override_dir)
    return PosixToolLocator(override_dir)
