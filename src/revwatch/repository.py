"""Local checkout management: clone, fetch, fast-forward and update detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from .git.runner import GitExecutionResult, GitRunner, describe

logger = logging.getLogger(__name__)

_COMMIT_FORMAT = "%H%x00%an%x00%ct%x00%B"

_AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "permission denied (publickey",
    "invalid username or password",
    "access denied",
    "returned error: 401",
    "returned error: 403",
)
_NETWORK_MARKERS = (
    "could not resolve host",
    "could not resolve hostname",
    "failed to connect",
    "connection refused",
    "connection timed out",
    "connection reset",
    "network is unreachable",
    "unable to access",
    "the remote end hung up",
    "early eof",
    "timeout after",
)
_CONFLICT_MARKERS = (
    "not possible to fast-forward",
    "cannot fast-forward",
    "diverging branches",
    "non-fast-forward",
    "need to specify how to reconcile",
)


class RepositoryError(RuntimeError):
    """Base class for checkout failures."""


class NetworkError(RepositoryError):
    """Raised when the remote cannot be reached."""


class AuthError(RepositoryError):
    """Raised when the remote demands credentials that were not supplied or were rejected."""


class PullConflict(RepositoryError):
    """Raised when the local branch cannot be fast-forwarded to the remote."""


class UpdateStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    CHANGED = "changed"
    INCONCLUSIVE = "inconclusive"


@dataclass(slots=True, frozen=True)
class CommitReference:
    """Metadata of a single commit, used for logging only."""

    revision: str
    author: str
    committed_at: datetime
    message: str

    def summary_lines(self) -> list[str]:
        return [
            f"Commit Hash: {self.revision}",
            f"Author: {self.author}",
            f"Date: {self.committed_at.astimezone().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Message: {self.message.strip()}",
        ]


@dataclass(slots=True, frozen=True)
class UpdateDecision:
    """Outcome of one remote comparison."""

    status: UpdateStatus
    local_revision: str | None = None
    remote_revision: str | None = None
    commit: CommitReference | None = None
    error: str | None = None

    @property
    def changed(self) -> bool:
        return self.status is UpdateStatus.CHANGED


@dataclass(slots=True, frozen=True)
class RepositoryHandle:
    """Where the checkout lives and which remote it follows.

    The tracked branch is deliberately absent: it is read from the checkout
    every time it is needed.
    """

    local_path: Path
    remote_url: str | None = None
    remote_name: str = "origin"

    @property
    def git_dir(self) -> Path:
        return self.local_path / ".git"

    def remote_ref(self, branch: str) -> str:
        return f"refs/remotes/{self.remote_name}/{branch}"


def classify_failure(result: GitExecutionResult, action: str) -> RepositoryError:
    """Map a failed git invocation onto the checkout error taxonomy."""

    detail = describe(result)
    text = f"{result.stderr}\n{result.stdout}".lower()
    message = f"git {action} failed: {detail}"
    if any(marker in text for marker in _AUTH_MARKERS):
        return AuthError(message)
    if any(marker in text for marker in _CONFLICT_MARKERS):
        return PullConflict(message)
    if result.timed_out or any(marker in text for marker in _NETWORK_MARKERS):
        return NetworkError(message)
    return RepositoryError(message)


def parse_commit(output: str) -> CommitReference | None:
    parts = output.split("\x00", 3)
    if len(parts) != 4:
        return None
    revision, author, timestamp, message = parts
    try:
        committed_at = datetime.fromtimestamp(int(timestamp.strip()), tz=timezone.utc)
    except ValueError:
        return None
    return CommitReference(
        revision=revision.strip(),
        author=author,
        committed_at=committed_at,
        message=message.rstrip("\n"),
    )


class RepositorySync:
    """Owns the local checkout described by a :class:`RepositoryHandle`."""

    def __init__(self, handle: RepositoryHandle, runner: GitRunner) -> None:
        self._handle = handle
        self._runner = runner

    @property
    def handle(self) -> RepositoryHandle:
        return self._handle

    @property
    def local_path(self) -> Path:
        return self._handle.local_path

    def is_present(self) -> bool:
        return self._handle.git_dir.exists()

    async def ensure_present(self) -> bool:
        """Clone the remote unless a checkout already exists.

        Returns ``True`` when a clone was performed.
        """

        if self.is_present():
            logger.debug("Checkout already present at %s", self.local_path)
            return False

        url = self._handle.remote_url
        if not url:
            raise RepositoryError(
                f"No checkout at {self.local_path} and no remote URL configured to clone from"
            )

        logger.info("Cloning repository from: %s", url)
        logger.info("Local path: %s", self.local_path)
        self.local_path.parent.mkdir(parents=True, exist_ok=True)
        result = await self._runner.clone(url, self.local_path, all_branches=True)
        if not result.ok:
            raise classify_failure(result, "clone")
        logger.info("Clone complete")
        return True

    async def current_branch(self) -> str:
        result = await self._runner.current_branch(self.local_path)
        branch = result.stdout.strip()
        if not result.ok or not branch:
            raise RepositoryError(f"Checkout at {self.local_path} is not on a branch (detached HEAD)")
        return branch

    async def pull_latest(self) -> None:
        """Fast-forward the current branch from the configured remote."""

        logger.info("Pulling latest changes from remote...")
        result = await self._runner.pull(self._handle.remote_name, self.local_path)
        if not result.ok:
            error = classify_failure(result, "pull")
            if isinstance(error, PullConflict):
                logger.error("Pull refused: local history has diverged from %s", self._handle.remote_name)
            raise error
        logger.info("Successfully pulled latest changes")

    async def check_for_update(self) -> UpdateDecision:
        """Fetch and compare HEAD with the remote tracking ref.

        Failures never propagate: they come back as ``INCONCLUSIVE`` so callers
        can tell "verified up to date" apart from "could not verify".
        """

        try:
            branch = await self.current_branch()
            fetched = await self._runner.fetch(self._handle.remote_name, self.local_path)
            if not fetched.ok:
                raise classify_failure(fetched, "fetch")
            local = await self._resolve("HEAD")
            remote = await self._resolve(self._handle.remote_ref(branch))
        except RepositoryError as exc:
            logger.warning("Error checking for updates: %s", exc)
            return UpdateDecision(status=UpdateStatus.INCONCLUSIVE, error=str(exc))

        if local == remote:
            return UpdateDecision(
                status=UpdateStatus.UP_TO_DATE, local_revision=local, remote_revision=remote
            )
        return UpdateDecision(
            status=UpdateStatus.CHANGED,
            local_revision=local,
            remote_revision=remote,
            commit=await self.latest_remote_commit(),
        )

    async def has_remote_update(self) -> bool:
        return (await self.check_for_update()).changed

    async def latest_remote_commit(self) -> CommitReference | None:
        try:
            branch = await self.current_branch()
        except RepositoryError as exc:
            logger.warning("Cannot resolve remote commit: %s", exc)
            return None
        result = await self._runner.show(self._handle.remote_ref(branch), _COMMIT_FORMAT, self.local_path)
        if not result.ok:
            logger.warning("Cannot resolve %s: %s", self._handle.remote_ref(branch), describe(result))
            return None
        return parse_commit(result.stdout)

    async def _resolve(self, ref: str) -> str:
        result = await self._runner.rev_parse(ref, self.local_path)
        revision = result.stdout.strip()
        if not result.ok or not revision:
            raise RepositoryError(f"Cannot resolve {ref}")
        return revision


__all__ = [
    "AuthError",
    "CommitReference",
    "NetworkError",
    "PullConflict",
    "RepositoryError",
    "RepositoryHandle",
    "RepositorySync",
    "UpdateDecision",
    "UpdateStatus",
    "classify_failure",
    "parse_commit",
]
