"""Synchronous (from the caller's point of view) build of the checkout."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .streams import STREAM_LIMIT, forward_lines
from .utils import child_environment

logger = logging.getLogger(__name__)
output_logger = logging.getLogger(f"{__name__}.output")


class BuildError(RuntimeError):
    """Raised when the build cannot start or exits with a nonzero code."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class BuildResult:
    """Holds the outcome of a successful build."""

    args: tuple[str, ...]
    exit_code: int
    duration_seconds: float
    line_count: int


class BuildRunner:
    """Run the configured build command inside a source directory."""

    def __init__(self, command: Sequence[str], *, manifest: str | None = None) -> None:
        if not command:
            raise ValueError("Build command must not be empty")
        self._command = tuple(command)
        self._manifest = manifest

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def build(self, source_dir: Path) -> BuildResult:
        """Build ``source_dir`` and return once the build process has exited.

        Output is streamed to the log while the build runs. A failed build
        leaves whatever artifacts already exist untouched.
        """

        logger.info("Working directory: %s", source_dir)
        if self._manifest and not (source_dir / self._manifest).exists():
            raise BuildError(f"{self._manifest} not found in {source_dir}")

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(source_dir),
                env=child_environment(),
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise BuildError(f"Error executing build {' '.join(self._command)!r}: {exc}") from exc

        assert process.stdout is not None
        try:
            line_count = await forward_lines(process.stdout, output_logger, label="build")
            exit_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        duration = time.monotonic() - started
        logger.info("Build completed with exit code: %s (%.1fs)", exit_code, duration)
        if exit_code != 0:
            raise BuildError(f"Build failed with exit code: {exit_code}", exit_code=exit_code)
        return BuildResult(
            args=self._command,
            exit_code=exit_code,
            duration_seconds=duration,
            line_count=line_count,
        )


__all__ = ["BuildError", "BuildResult", "BuildRunner"]
