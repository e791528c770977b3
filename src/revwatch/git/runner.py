"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .utils import credential_options, git_environment

TIMEOUT_RETURNCODE = 124

logger = logging.getLogger(__name__)


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE


class GitRunner:
    """Execute git commands asynchronously against a working directory."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        timeout: float = 120.0,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout
        self._auth_options = credential_options(username, password)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def clone(self, url: str, path: Path, *, all_branches: bool = True) -> GitExecutionResult:
        args = [*self._auth_options, "clone"]
        if all_branches:
            args.append("--no-single-branch")
        return await self._invoke(*args, url, str(path), cwd=path.parent)

    async def fetch(self, remote: str, cwd: Path) -> GitExecutionResult:
        return await self._invoke(*self._auth_options, "fetch", "--prune", remote, cwd=cwd)

    async def pull(self, remote: str, cwd: Path) -> GitExecutionResult:
        return await self._invoke(*self._auth_options, "pull", "--ff-only", remote, cwd=cwd)

    async def rev_parse(self, ref: str, cwd: Path) -> GitExecutionResult:
        return await self._invoke("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=cwd)

    async def current_branch(self, cwd: Path) -> GitExecutionResult:
        return await self._invoke("symbolic-ref", "--short", "-q", "HEAD", cwd=cwd)

    async def show(self, ref: str, fmt: str, cwd: Path) -> GitExecutionResult:
        return await self._invoke("log", "-1", f"--format={fmt}", ref, "--", cwd=cwd)

    async def _invoke(self, *args: str, cwd: Path) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=git_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return GitExecutionResult(
                args=tuple(cmd),
                returncode=TIMEOUT_RETURNCODE,
                stdout="",
                stderr=f"timeout after {self._timeout:g}s",
            )
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that replays canned git responses."""

    def __init__(self, responses: Iterable[GitExecutionResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/tmp/fake-git")
        self._timeout = 1.0
        self._auth_options = []

    async def _invoke(self, *args: str, cwd: Path) -> GitExecutionResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            return self._responses.pop(0)
        return GitExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


def fake_result(stdout: str = "", *, returncode: int = 0, stderr: str = "") -> GitExecutionResult:
    """Build a canned result for :class:`FakeGitRunner`."""

    return GitExecutionResult(args=("git",), returncode=returncode, stdout=stdout, stderr=stderr)


def describe(result: GitExecutionResult, *, limit: int = 400) -> str:
    """Summarize a failed invocation for log and exception messages."""

    text = (result.stderr or result.stdout).strip()
    return text[:limit] or f"git exited with code {result.returncode}"


__all__ = [
    "FakeGitRunner",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
    "TIMEOUT_RETURNCODE",
    "describe",
    "fake_result",
]
