"""The polling loop that keeps the supervised application on the latest revision."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Sequence

from .build import BuildError, BuildRunner
from .repository import CommitReference, RepositoryError, RepositorySync, UpdateStatus
from .supervisor import ProcessLaunchError, ProcessSupervisor

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    UPDATED = "updated"
    BUILD_FAILED = "build_failed"
    HEALED = "healed"
    PULL_FAILED = "pull_failed"
    IDLE = "idle"
    FAILED = "failed"


class UpdateLoop:
    """Poll the remote, rebuild on new revisions and keep one instance alive."""

    def __init__(
        self,
        repository: RepositorySync,
        builder: BuildRunner,
        supervisor: ProcessSupervisor,
        *,
        launch_command: Sequence[str],
        interval: float = 60.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._repository = repository
        self._builder = builder
        self._supervisor = supervisor
        self._launch_command = tuple(launch_command)
        self._interval = interval
        self._stop = asyncio.Event()
        self.cycles = 0

    @property
    def source_dir(self) -> Path:
        return self._repository.local_path

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    async def bootstrap(self) -> bool:
        """Clone if needed, then pull, build and launch once.

        A missing checkout that cannot be cloned is fatal and propagates. Any
        later failure is logged and left to the polling cycles to repair.
        Returns ``True`` when the application was launched.
        """

        await self._repository.ensure_present()
        try:
            await self._repository.pull_latest()
        except RepositoryError as exc:
            logger.error("Initial pull failed: %s", exc)
        try:
            await self._builder.build(self.source_dir)
        except BuildError as exc:
            logger.error("Initial build failed: %s", exc)
            return False
        try:
            await self._supervisor.launch(self._launch_command, self.source_dir)
        except ProcessLaunchError as exc:
            logger.error("%s", exc)
            return False
        return True

    async def run(self) -> None:
        """Poll until :meth:`request_stop` is called or the task is cancelled.

        The supervised process is always stopped on the way out.
        """

        logger.info("Watching %s every %gs", self.source_dir, self._interval)
        try:
            while not self._stop.is_set():
                await self.run_cycle()
                await self._sleep()
        finally:
            await self._supervisor.aclose()
            logger.info("Update loop stopped after %d cycle(s)", self.cycles)

    async def run_cycle(self) -> CycleOutcome:
        self.cycles += 1
        try:
            return await self._cycle()
        except (RepositoryError, ProcessLaunchError) as exc:
            logger.error("%s; retrying in %gs", exc, self._interval)
        except Exception:
            logger.exception("Poll cycle failed; retrying in %gs", self._interval)
        return CycleOutcome.FAILED

    async def _cycle(self) -> CycleOutcome:
        decision = await self._repository.check_for_update()

        if decision.changed:
            logger.info("Repository needs update")
            try:
                await self._repository.pull_latest()
            except RepositoryError as exc:
                logger.error("%s; keeping the current build", exc)
                if await self._heal():
                    return CycleOutcome.HEALED
                return CycleOutcome.PULL_FAILED
            commit = decision.commit or await self._repository.latest_remote_commit()
            if commit is not None:
                self._log_commit(commit)
            try:
                await self._builder.build(self.source_dir)
            except BuildError as exc:
                logger.error("%s; keeping the current instance", exc)
                return CycleOutcome.BUILD_FAILED
            await self._supervisor.stop()
            await self._supervisor.launch(self._launch_command, self.source_dir)
            return CycleOutcome.UPDATED

        if decision.status is UpdateStatus.INCONCLUSIVE:
            logger.warning("Could not verify the remote revision (%s); treating as up to date", decision.error)
        else:
            logger.info("Repository is up to date")

        if await self._heal():
            return CycleOutcome.HEALED
        return CycleOutcome.IDLE

    async def _heal(self) -> bool:
        """Relaunch the build already on disk if the application has died."""

        if await self._supervisor.is_running():
            return False
        logger.info("Application is not running; relaunching the current build")
        await self._supervisor.launch(self._launch_command, self.source_dir)
        return True

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _log_commit(commit: CommitReference) -> None:
        logger.info("Latest version information:\n%s", "\n".join(commit.summary_lines()))


__all__ = ["CycleOutcome", "UpdateLoop"]
