"""Run external command-line tools and collect their output."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tenantcore.exceptions import ToolResolutionError

if TYPE_CHECKING:
    from pathlib import Path

    from tenantcore.tools.locator import ToolLocator

logger = logging.getLogger(__name__)

_WARNING_MARKERS = ("WARNING", "NOTICE")
_ERROR_MARKERS = ("ERROR", "FATAL", "PANIC")


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""

    tool: str
    path: str
    returncode: int | None
    stdout: bytes = b""
    stderr: str = ""
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def classify_stderr(stderr: str, returncode: int | None) -> tuple[list[str], list[str]]:
    """Split stderr into (warnings, fatal errors).

    ERROR lines only count as fatal when the process failed; a zero exit
    status demotes them to warnings.
    """
    warnings: list[str] = []
    errors: list[str] = []
    failed = returncode != 0
    for raw_line in stderr.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if any(marker in line for marker in _ERROR_MARKERS):
            (errors if failed else warnings).append(line)
        elif any(marker in line for marker in _WARNING_MARKERS):
            warnings.append(line)
    return warnings, errors


class ToolInvoker:
    """Spawn tools resolved by a ``ToolLocator``, one process per call.

    Args:
        locator: Platform locator used to resolve tool names.
        timeout: Default wall-clock limit in seconds for each invocation.
    """

    def __init__(self, locator: ToolLocator, timeout: float = 600) -> None:
        if timeout <= 0:
            msg = f"timeout must be positive, got {timeout}"
            raise ValueError(msg)
        self._locator = locator
        self._timeout = timeout

    async def run(
        self,
        tool: str,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        output_file: Path | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run ``tool`` with ``args`` and wait for it to finish.

        Stdout goes to ``output_file`` when given, otherwise it is captured.
        Stderr is always captured. A process that outlives the timeout is
        killed and reported with ``timed_out=True``.

        Raises:
            ToolResolutionError: If the process could not be spawned.
        """
        path = self._locator.resolve(tool)
        limit = timeout if timeout is not None else self._timeout
        child_env = {**os.environ, **(env or {})}

        stdout_handle = output_file.open("wb") if output_file is not None else None
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    path,
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=stdout_handle if stdout_handle is not None else asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=child_env,
                )
            except FileNotFoundError as exc:
                raise ToolResolutionError(tool, path) from exc
            except PermissionError as exc:
                raise ToolResolutionError(tool, path, str(exc)) from exc

            logger.info("Started %s (pid=%s)", tool, process.pid)
            try:
                stdout, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=limit)
            except TimeoutError:
                logger.error("%s exceeded %.1fs, killing pid %s", tool, limit, process.pid)
                process.kill()
                await process.wait()
                return ToolResult(
                    tool=tool,
                    path=path,
                    returncode=process.returncode,
                    errors=[f"{tool} timed out after {limit:g}s and was killed"],
                    timed_out=True,
                )
        finally:
            if stdout_handle is not None:
                stdout_handle.close()

        stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
        warnings, errors = classify_stderr(stderr, process.returncode)
        if process.returncode != 0 and not errors:
            message = f"{tool} exited with code {process.returncode}"
            detail = stderr.strip()[:500]
            errors.append(f"{message}: {detail}" if detail else message)
        result = ToolResult(
            tool=tool,
            path=path,
            returncode=process.returncode,
            stdout=stdout or b"",
            stderr=stderr,
            warnings=warnings,
            errors=errors,
        )
        logger.info(
            "%s finished with code %s (%d warnings, %d errors)",
            tool,
            process.returncode,
            len(warnings),
            len(errors),
        )
        return result
