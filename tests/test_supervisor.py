from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import pytest

from revwatch.supervisor import (
    ProcessLaunchError,
    ProcessState,
    ProcessSupervisor,
    SupervisorStateError,
)

SLEEPER = [sys.executable, "-c", "import time\ntime.sleep(60)"]


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


async def _wait_until_stopped(supervisor: ProcessSupervisor, timeout: float = 10.0) -> None:
    async def _poll() -> None:
        while await supervisor.is_running():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_poll(), timeout)


def test_launch_and_stop(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        pid = await supervisor.launch(SLEEPER, tmp_path)
        running = await supervisor.is_running()
        state = supervisor.state
        record = await supervisor.stop()
        return pid, running, state, record, await supervisor.is_running(), supervisor

    pid, running, state, record, running_after, supervisor = asyncio.run(scenario())

    assert running is True
    assert state is ProcessState.RUNNING
    assert record is not None
    assert record.pid == pid
    assert record.state is ProcessState.STOPPED
    assert running_after is False
    assert supervisor.state is ProcessState.NOT_RUNNING
    assert supervisor.pid is None


def test_stop_without_process_is_noop() -> None:
    async def scenario():
        supervisor = ProcessSupervisor()
        first = await supervisor.stop()
        second = await supervisor.stop()
        return first, second, supervisor

    first, second, supervisor = asyncio.run(scenario())

    assert first is None and second is None
    assert supervisor.last_exit is None
    assert supervisor.state is ProcessState.NOT_RUNNING


def test_second_launch_is_refused_while_running(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        pid = await supervisor.launch(SLEEPER, tmp_path)
        try:
            with pytest.raises(SupervisorStateError):
                await supervisor.launch(SLEEPER, tmp_path)
            return pid, supervisor.pid
        finally:
            await supervisor.aclose()

    pid, current = asyncio.run(scenario())

    assert pid == current


def test_natural_exit_clears_slot(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor()
        await supervisor.launch(_python("import sys\nsys.exit(3)"), tmp_path)
        await _wait_until_stopped(supervisor)
        await supervisor.aclose()
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.last_exit is not None
    assert supervisor.last_exit.returncode == 3
    assert supervisor.last_exit.state is ProcessState.EXITED_WITH_ERROR
    assert supervisor.state is ProcessState.NOT_RUNNING


def test_output_is_forwarded_to_log(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="revwatch")

    async def scenario():
        supervisor = ProcessSupervisor(label="dashboard")
        await supervisor.launch(
            _python("import sys\nprint('hello from app')\nprint('oops', file=sys.stderr)"), tmp_path
        )
        await _wait_until_stopped(supervisor)
        await supervisor.aclose()

    asyncio.run(scenario())

    lines = [r.getMessage() for r in caplog.records if r.name == "revwatch.supervisor.output"]
    assert "[dashboard] hello from app" in lines
    assert "[dashboard] oops" in lines


def test_launch_runs_in_work_dir(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor()
        await supervisor.launch(_python("open('marker', 'w').write('here')"), tmp_path)
        await _wait_until_stopped(supervisor)
        await supervisor.aclose()

    asyncio.run(scenario())

    assert (tmp_path / "marker").read_text() == "here"


def test_launch_failure(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor()
        with pytest.raises(ProcessLaunchError):
            await supervisor.launch([str(tmp_path / "missing-binary")], tmp_path)
        return supervisor, await supervisor.is_running()

    supervisor, running = asyncio.run(scenario())

    assert running is False
    assert supervisor.state is ProcessState.NOT_RUNNING


def test_relaunch_after_exit(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        first = await supervisor.launch(_python("pass"), tmp_path)
        await _wait_until_stopped(supervisor)
        second = await supervisor.launch(SLEEPER, tmp_path)
        running = await supervisor.is_running()
        await supervisor.aclose()
        return first, second, running

    first, second, running = asyncio.run(scenario())

    assert first != second
    assert running is True


def test_restarts_never_overlap(tmp_path: Path) -> None:
    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        records = []
        for _ in range(3):
            pid = await supervisor.launch(SLEEPER, tmp_path)
            record = await supervisor.stop()
            records.append((pid, record))
        return records, await supervisor.is_running()

    records, running = asyncio.run(scenario())

    assert running is False
    assert len({pid for pid, _ in records}) == 3
    for pid, record in records:
        assert record is not None and record.pid == pid
        assert record.state is ProcessState.STOPPED


def test_stop_racing_natural_exit_clears_once(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="revwatch.supervisor")

    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        pid = await supervisor.launch(_python("pass"), tmp_path)
        await asyncio.sleep(0.2)
        await supervisor.stop()
        await supervisor.aclose()
        return pid, supervisor

    pid, supervisor = asyncio.run(scenario())

    endings = [
        r for r in caplog.records if r.name == "revwatch.supervisor" and r.getMessage().startswith(f"Application (pid {pid})")
    ]
    assert len(endings) == 1
    assert supervisor.last_exit is not None
    assert supervisor.last_exit.pid == pid



def test_stop_concurrent_with_natural_exit_clears_once(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="revwatch.supervisor")

    async def scenario():
        supervisor = ProcessSupervisor(grace_period=5)
        rounds = []
        for _ in range(5):
            pid = await supervisor.launch(_python("pass"), tmp_path)
            first, running, second = await asyncio.gather(
                supervisor.stop(), supervisor.is_running(), supervisor.stop()
            )
            rounds.append((pid, first, running, second, supervisor.last_exit, supervisor.pid))
        await supervisor.aclose()
        return rounds

    rounds = asyncio.run(scenario())

    for pid, first, running, second, last_exit, current in rounds:
        endings = [
            r
            for r in caplog.records
            if r.name == "revwatch.supervisor" and r.getMessage().startswith(f"Application (pid {pid})")
        ]
        assert len(endings) == 1
        assert running is False
        assert [r for r in (first, second) if r is not None] in ([], [last_exit])
        assert last_exit is not None and last_exit.pid == pid
        assert current is None


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX specific")
def test_natural_exit_kills_leftover_grandchildren(tmp_path: Path) -> None:
    spawner = _python(
        "import subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print('spawned', flush=True)"
    )

    async def scenario():
        supervisor = ProcessSupervisor(grace_period=30)
        await supervisor.launch(spawner, tmp_path)
        await _wait_until_stopped(supervisor)
        # the output drain only finishes once every holder of the pipe is gone
        await asyncio.wait_for(supervisor.aclose(), timeout=10)
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.last_exit is not None
    assert supervisor.last_exit.returncode == 0

@pytest.mark.skipif(os.name != "posix", reason="SIGTERM handling is POSIX specific")
def test_stop_escalates_to_kill(tmp_path: Path) -> None:
    armed = tmp_path / "armed"
    stubborn = _python(
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"open({str(armed)!r}, 'w').close()\n"
        "time.sleep(60)"
    )

    async def scenario():
        supervisor = ProcessSupervisor(grace_period=0.3)
        await supervisor.launch(stubborn, tmp_path)
        for _ in range(200):
            if armed.exists():
                break
            await asyncio.sleep(0.05)
        record = await supervisor.stop()
        return record, await supervisor.is_running()

    record, running = asyncio.run(scenario())

    assert record is not None
    assert record.returncode == -signal.SIGKILL
    assert record.state is ProcessState.STOPPED
    assert running is False


def test_context_manager_stops_process(tmp_path: Path) -> None:
    async def scenario():
        async with ProcessSupervisor(grace_period=5) as supervisor:
            await supervisor.launch(SLEEPER, tmp_path)
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.last_exit is not None
    assert supervisor.last_exit.state is ProcessState.STOPPED


def test_grace_period_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ProcessSupervisor(grace_period=0)
