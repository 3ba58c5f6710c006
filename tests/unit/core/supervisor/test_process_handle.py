"""Unit tests for ProcessHandle - spawn, exit detection and termination."""
# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import io
import time
from pathlib import Path

import pytest

from core.config import OutputMatches, OutputMode, ProgramDescriptor
from core.exceptions import SpawnError
from core.output import OutputRouter
from core.supervisor.process_handle import (
    ProcessHandle,
    ProcessState,
    TerminationOutcome,
    spawn,
)
from tests.helpers.programs import STUBBORN_SCRIPT, py_program, sleeper


async def _first_line(handle: ProcessHandle, stream: str = "stdout") -> str:
    agen = handle.readiness_lines(stream)
    try:
        return await asyncio.wait_for(agen.__anext__(), timeout=5)
    finally:
        await agen.aclose()


# ── Spawn ─────────────────────────────────────────────────


class TestSpawn:
    @pytest.mark.asyncio
    async def test_spawn_running(self, null_router, reap):
        handle = await spawn(sleeper("s"), null_router)
        reap.append(handle)
        assert handle.state == ProcessState.RUNNING
        assert handle.pid is not None
        assert handle.started_at > 0
        assert handle.is_alive()
        assert str(handle) == f"s:{handle.pid}"
        await handle.terminate(1.0)

    @pytest.mark.asyncio
    async def test_missing_executable(self, null_router):
        desc = ProgramDescriptor(name="ghost", argv=["/nonexistent/lineup-test-binary"])
        handle = ProcessHandle(desc, null_router)
        with pytest.raises(SpawnError, match="executable not found") as exc_info:
            await handle.start()
        assert exc_info.value.program == "ghost"
        assert handle.state == ProcessState.FAILED
        assert handle.process is None

    @pytest.mark.asyncio
    async def test_missing_cwd(self, null_router, tmp_path: Path):
        desc = sleeper("s", cwd=tmp_path / "absent")
        with pytest.raises(SpawnError, match="working directory"):
            await spawn(desc, null_router)

    @pytest.mark.asyncio
    async def test_not_executable(self, null_router, tmp_path: Path):
        script = tmp_path / "script.sh"
        script.write_text("#!/bin/sh\necho hi\n")
        script.chmod(0o644)
        with pytest.raises(SpawnError, match="permission denied"):
            await spawn(ProgramDescriptor(name="p", argv=[str(script)]), null_router)

    @pytest.mark.asyncio
    async def test_env_and_cwd_applied(self, null_router, reap, tmp_path: Path):
        desc = py_program(
            "envy",
            "import os; print(os.environ['LINEUP_TEST_VAR'], os.getcwd(), flush=True)",
            env={"LINEUP_TEST_VAR": "hello"},
            cwd=tmp_path,
            readiness=OutputMatches(pattern="hello"),
        )
        handle = await spawn(desc, null_router)
        reap.append(handle)
        line = await _first_line(handle)
        assert line.split() == ["hello", str(tmp_path.resolve())]
        await handle.wait()

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, null_router, reap):
        handle = await spawn(sleeper("s"), null_router)
        reap.append(handle)
        with pytest.raises(RuntimeError):
            await handle.start()
        await handle.terminate(1.0)


# ── Output ────────────────────────────────────────────────


class TestOutput:
    @pytest.mark.asyncio
    async def test_terminal_prefix(self, reap):
        out, err = io.StringIO(), io.StringIO()
        router = OutputRouter(stdout=out, stderr=err)
        desc = py_program(
            "talk", "import sys; print('to out'); print('to err', file=sys.stderr)",
        )
        handle = await spawn(desc, router)
        reap.append(handle)
        assert await handle.wait() == 0
        await handle.terminate(1.0)
        assert out.getvalue() == "[talk] to out\n"
        assert err.getvalue() == "[talk] to err\n"

    @pytest.mark.asyncio
    async def test_readiness_feed_sees_first_line(self, null_router, reap):
        desc = py_program(
            "early", "print('first'); print('second')",
            readiness=OutputMatches(pattern="first"),
        )
        handle = await spawn(desc, null_router)
        reap.append(handle)
        await handle.wait()
        # Even though the process is gone, the pre-subscribed feed kept every line
        lines = [line async for line in handle.readiness_lines("stdout")]
        assert lines == ["first\n", "second\n"]

    @pytest.mark.asyncio
    async def test_file_output(self, tmp_path: Path, reap):
        router = OutputRouter(default_mode=OutputMode.FILE, output_root=tmp_path)
        handle = await spawn(py_program("logger", "print('persisted')"), router)
        reap.append(handle)
        await handle.wait()
        await handle.terminate(1.0)
        assert (router.run_dir / "logger.out").read_text() == "persisted\n"


# ── Exit detection ────────────────────────────────────────


class TestExit:
    @pytest.mark.asyncio
    async def test_wait_returns_exit_code(self, null_router, reap):
        handle = await spawn(py_program("bye", "raise SystemExit(3)"), null_router)
        reap.append(handle)
        assert await handle.wait() == 3
        assert handle.state == ProcessState.EXITED
        assert handle.exit_code == 3
        assert handle.pid is None
        assert not handle.is_alive()
        # wait() is repeatable
        assert await handle.wait() == 3

    @pytest.mark.asyncio
    async def test_wait_before_spawn(self, null_router):
        handle = ProcessHandle(sleeper("s"), null_router)
        assert await handle.wait() is None

    @pytest.mark.asyncio
    async def test_exit_not_delayed_by_grandchild_holding_pipe(self, null_router, reap):
        script = """
            import subprocess, sys
            subprocess.Popen([sys.executable, "-c", "import time; time.sleep(3)"])
        """
        handle = await spawn(py_program("parent", script), null_router)
        reap.append(handle)
        assert await asyncio.wait_for(handle.wait(), timeout=2) == 0
        await handle.terminate(0.5)


# ── State machine ─────────────────────────────────────────


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_mark_ready_and_failed(self, null_router, reap):
        handle = await spawn(sleeper("s"), null_router)
        reap.append(handle)
        handle.mark_ready()
        assert handle.state == ProcessState.READY
        assert handle.stats.ready_at is not None
        with pytest.raises(RuntimeError, match="Illegal state transition"):
            handle.mark_failed("too late")
        await handle.terminate(1.0)
        assert handle.state == ProcessState.EXITED

    @pytest.mark.asyncio
    async def test_mark_after_exit_keeps_exited(self, null_router, reap):
        handle = await spawn(py_program("quick", "pass"), null_router)
        reap.append(handle)
        await handle.wait()
        handle.mark_ready()
        handle.mark_failed("gone")
        assert handle.state == ProcessState.EXITED
        assert handle.failure_reason == "gone"


# ── Termination ───────────────────────────────────────────


class TestTerminate:
    @pytest.mark.asyncio
    async def test_graceful(self, null_router, reap):
        handle = await spawn(sleeper("s"), null_router)
        reap.append(handle)
        outcome = await handle.terminate(2.0)
        assert outcome is TerminationOutcome.EXITED
        assert handle.state == ProcessState.EXITED
        assert handle.stats.signalled
        assert not handle.stats.force_killed
        assert handle.exit_code == -15

    @pytest.mark.asyncio
    async def test_force_kill_after_grace(self, null_router, reap):
        handle = await spawn(
            py_program("stubborn", STUBBORN_SCRIPT, readiness=OutputMatches(pattern="stubborn")),
            null_router,
        )
        reap.append(handle)
        assert await _first_line(handle) == "stubborn\n"

        t0 = time.monotonic()
        outcome = await handle.terminate(0.3)
        elapsed = time.monotonic() - t0

        assert outcome is TerminationOutcome.FORCE_KILLED
        assert handle.stats.force_killed
        assert handle.exit_code == -9
        assert 0.3 <= elapsed < 3.0

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_noop(self, null_router, reap):
        handle = await spawn(py_program("quick", "pass"), null_router)
        reap.append(handle)
        await handle.wait()
        assert await handle.terminate(1.0) is TerminationOutcome.EXITED
        assert not handle.stats.signalled

    @pytest.mark.asyncio
    async def test_terminate_twice(self, null_router, reap):
        handle = await spawn(sleeper("s"), null_router)
        reap.append(handle)
        await handle.terminate(1.0)
        assert await handle.terminate(1.0) is TerminationOutcome.EXITED

    @pytest.mark.asyncio
    async def test_terminate_never_spawned(self, null_router):
        handle = ProcessHandle(sleeper("s"), null_router)
        assert await handle.terminate(1.0) is TerminationOutcome.EXITED

    @pytest.mark.asyncio
    async def test_process_group_signalled(self, null_router, reap, tmp_path: Path):
        pidfile = tmp_path / "child.pid"
        script = f"""
            import subprocess, sys, time
            child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
            open({str(pidfile)!r}, "w").write(str(child.pid))
            print("spawned", flush=True)
            child.wait()
        """
        handle = await spawn(
            py_program("tree", script, readiness=OutputMatches(pattern="spawned")),
            null_router,
        )
        reap.append(handle)
        assert await _first_line(handle) == "spawned\n"
        child_pid = int(pidfile.read_text())

        await handle.terminate(2.0)

        # The grandchild got SIGTERM too; wait for the OS to reap it
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if not Path(f"/proc/{child_pid}").exists() or _is_zombie(child_pid):
                break
            await asyncio.sleep(0.05)
        assert not Path(f"/proc/{child_pid}").exists() or _is_zombie(child_pid)


def _is_zombie(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    return stat.rsplit(")", 1)[1].split()[0] == "Z"
