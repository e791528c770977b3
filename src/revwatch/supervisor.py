"""Lifecycle management for the single supervised application process."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Coroutine, Sequence

from .streams import STREAM_LIMIT, forward_lines
from .utils import child_environment

logger = logging.getLogger(__name__)
output_logger = logging.getLogger(f"{__name__}.output")


class SupervisorError(RuntimeError):
    """Base class for supervisor errors."""


class ProcessLaunchError(SupervisorError):
    """Raised when the application process cannot be spawned."""


class SupervisorStateError(SupervisorError):
    """Raised when launch() is called while an instance is still alive."""


class ProcessState(str, Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    EXITED_NORMALLY = "exited_normally"
    EXITED_WITH_ERROR = "exited_with_error"
    STOPPED = "stopped"


@dataclass(slots=True, frozen=True)
class ExitRecord:
    """How the most recent instance ended."""

    pid: int
    returncode: int
    state: ProcessState
    finished_at: datetime


@dataclass(slots=True)
class _Instance:
    process: asyncio.subprocess.Process
    args: tuple[str, ...]
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Owns at most one running child process.

    The slot holding the current instance is guarded by a single lock. It is
    set by :meth:`launch` and cleared exactly once: by :meth:`stop`, or, when
    the process ends on its own, by whichever of the exit monitor and the
    next caller holding the lock sees the exit first.
    """

    def __init__(self, *, grace_period: float = 10.0, label: str = "app") -> None:
        if grace_period <= 0:
            raise ValueError("grace_period must be > 0")
        self._grace_period = grace_period
        self._label = label
        self._lock = asyncio.Lock()
        self._slot: _Instance | None = None
        self._state = ProcessState.NOT_RUNNING
        self._last_exit: ExitRecord | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def last_exit(self) -> ExitRecord | None:
        return self._last_exit

    @property
    def pid(self) -> int | None:
        instance = self._slot
        return instance.pid if instance is not None else None

    async def is_running(self) -> bool:
        async with self._lock:
            current = self._slot
            if current is not None and not current.alive:
                self._finalize(current, current.process.returncode, stopped=False)
            return self._slot is not None

    async def launch(self, command: Sequence[str], work_dir: Path) -> int:
        """Spawn ``command`` in ``work_dir`` and return its pid without waiting for it."""

        if not command:
            raise ValueError("Launch command must not be empty")

        async with self._lock:
            current = self._slot
            if current is not None:
                if current.alive:
                    raise SupervisorStateError(
                        f"Refusing to launch: pid {current.pid} is still running"
                    )
                # exited, but the monitor has not cleared it yet
                self._finalize(current, current.process.returncode, stopped=False)

            logger.info("Launching application from: %s", work_dir)
            self._state = ProcessState.STARTING
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(work_dir),
                    env=child_environment(),
                    limit=STREAM_LIMIT,
                    start_new_session=os.name == "posix",
                )
            except OSError as exc:
                self._state = ProcessState.NOT_RUNNING
                raise ProcessLaunchError(f"Error launching {' '.join(command)!r}: {exc}") from exc

            instance = _Instance(process=process, args=tuple(command))
            assert process.stdout is not None
            instance.tasks.append(
                self._spawn(
                    forward_lines(process.stdout, output_logger, label=self._label),
                    name=f"{self._label}-drain-{process.pid}",
                )
            )
            instance.tasks.append(
                self._spawn(self._monitor(instance), name=f"{self._label}-monitor-{process.pid}")
            )
            self._slot = instance
            self._state = ProcessState.RUNNING
            logger.info("Application launched successfully (pid %s)", process.pid)
            return process.pid

    async def stop(self) -> ExitRecord | None:
        """Terminate the current instance, if any, and wait until it is gone.

        SIGTERM is escalated to SIGKILL after the grace period. Calling this
        with nothing running is a no-op.
        """

        async with self._lock:
            instance = self._slot
            if instance is None:
                return None
            terminated = instance.alive
            if terminated:
                logger.info("Stopping application (pid %s)", instance.pid)
                returncode = await self._terminate(instance.process)
            else:
                returncode = instance.process.returncode
            record = self._finalize(instance, returncode, stopped=terminated)
        await self._join(instance.tasks)
        return record

    async def aclose(self) -> None:
        await self.stop()
        await self._join(list(self._tasks))

    async def __aenter__(self) -> "ProcessSupervisor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _monitor(self, instance: _Instance) -> None:
        returncode = await instance.process.wait()
        if os.name == "posix":
            self._reap_group(instance.process)
        async with self._lock:
            if self._slot is instance:
                self._finalize(instance, returncode, stopped=False)

    def _finalize(self, instance: _Instance, returncode: int, *, stopped: bool) -> ExitRecord:
        if stopped:
            state = ProcessState.STOPPED
        elif returncode == 0:
            state = ProcessState.EXITED_NORMALLY
        else:
            state = ProcessState.EXITED_WITH_ERROR
        record = ExitRecord(
            pid=instance.pid,
            returncode=returncode,
            state=state,
            finished_at=datetime.now(timezone.utc),
        )
        self._slot = None
        self._last_exit = record
        self._state = ProcessState.NOT_RUNNING
        level = logging.WARNING if state is ProcessState.EXITED_WITH_ERROR else logging.INFO
        logger.log(level, "Application (pid %s) %s with code: %s", instance.pid, state.value, returncode)
        return record

    async def _terminate(self, process: asyncio.subprocess.Process) -> int:
        self._send(process, force=False)
        try:
            return await asyncio.wait_for(process.wait(), timeout=self._grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Application (pid %s) still running %.1fs after SIGTERM; killing",
                process.pid,
                self._grace_period,
            )
        self._send(process, force=True)
        return await process.wait()

    @staticmethod
    def _send(process: asyncio.subprocess.Process, *, force: bool) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    @staticmethod
    def _reap_group(process: asyncio.subprocess.Process) -> None:
        # anything the child left behind in its session would keep the output pipe open
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    def _spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Supervisor task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def _join(self, tasks: Sequence[asyncio.Task]) -> None:
        pending = [task for task in tasks if not task.done()]
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=self._grace_period)
        for task in still_pending:
            # a grandchild may keep the output pipe open after the child is gone
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


__all__ = [
    "ExitRecord",
    "ProcessLaunchError",
    "ProcessState",
    "ProcessSupervisor",
    "SupervisorError",
    "SupervisorStateError",
]
