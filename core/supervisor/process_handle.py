"""
Process handle for managing one child program.
"""

# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from core.config.models import OutputMatches, ProgramDescriptor
from core.exceptions import SpawnError, TerminationError, TerminationTimeout
from core.output import NullSink, OutputRouter
from core.supervisor.streams import LineFanout

logger = logging.getLogger(__name__)

# Per-line buffer limit for piped output (asyncio default is 64 KiB)
_STREAM_LIMIT = 1024 * 1024

# How long to wait for the OS to reap a process after SIGKILL
_KILL_WAIT_SEC = 5.0

# Exit detection poll interval
_EXIT_POLL_SEC = 0.05

# How long to let stream readers drain after the process is gone
_STREAM_DRAIN_SEC = 1.0


# ── Process State ──────────────────────────────────────────────────

class ProcessState(Enum):
    """State of a child process."""
    SPAWNING = "spawning"        # Being launched
    RUNNING = "running"          # Spawned, readiness not yet established
    READY = "ready"              # Readiness criterion satisfied
    FAILED = "failed"            # Readiness failed, process may still be alive
    TERMINATING = "terminating"  # Termination requested
    EXITED = "exited"            # Process has exited (terminal)


_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.SPAWNING: frozenset({ProcessState.RUNNING, ProcessState.FAILED}),
    ProcessState.RUNNING: frozenset({
        ProcessState.READY, ProcessState.FAILED,
        ProcessState.TERMINATING, ProcessState.EXITED,
    }),
    ProcessState.READY: frozenset({ProcessState.TERMINATING, ProcessState.EXITED}),
    ProcessState.FAILED: frozenset({ProcessState.TERMINATING, ProcessState.EXITED}),
    ProcessState.TERMINATING: frozenset({ProcessState.EXITED}),
    ProcessState.EXITED: frozenset(),
}


class TerminationOutcome(Enum):
    """How a terminated process went away."""
    EXITED = "exited"
    FORCE_KILLED = "force_killed"


@dataclass
class ProcessStats:
    """Process statistics."""
    started_at: datetime
    ready_at: datetime | None = None
    stopped_at: datetime | None = None
    exit_code: int | None = None
    signalled: bool = False
    force_killed: bool = False


# ── Process Handle ──────────────────────────────────────────────────

class ProcessHandle:
    """
    Handle for one spawned program.

    Owns the OS process, its piped output streams and its lifecycle
    state.  Created by :func:`spawn`; only the orchestrator drives state
    changes, except for the exit watcher which records the OS exit.
    """

    def __init__(
        self,
        descriptor: ProgramDescriptor,
        router: OutputRouter | None = None,
    ):
        self.descriptor = descriptor
        self.router = router

        self.state = ProcessState.SPAWNING
        self.process: asyncio.subprocess.Process | None = None
        self.failure_reason: str | None = None
        self.started_at: float = 0.0
        self.stats = ProcessStats(started_at=datetime.now())

        self.stdout: LineFanout | None = None
        self.stderr: LineFanout | None = None
        self._readiness_queue: asyncio.Queue | None = None
        self._exited = asyncio.Event()
        self._watcher: asyncio.Task | None = None

    def __str__(self) -> str:
        pid = self.process.pid if self.process else "-"
        return f"{self.name}:{pid}"

    def __repr__(self) -> str:
        return f"<ProcessHandle {self} {self.state.value}>"

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pid(self) -> int | None:
        """OS process id; only meaningful until the process has exited."""
        if self.process is None or self.state == ProcessState.EXITED:
            return None
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.stats.exit_code

    def _transition(self, new_state: ProcessState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal state transition for {self.name}: "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug("%s: %s -> %s", self, self.state.value, new_state.value)
        self.state = new_state

    # ── Spawn ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the process and begin pumping its output.

        Raises:
            SpawnError: executable missing, permission denied, bad cwd, ...
        """
        if self.state != ProcessState.SPAWNING or self.process is not None:
            raise RuntimeError(f"Cannot start process in state {self.state}")

        desc = self.descriptor
        cwd = desc.cwd
        if cwd is not None and not cwd.is_dir():
            self._transition(ProcessState.FAILED)
            self.failure_reason = f"working directory {cwd} does not exist"
            raise SpawnError(desc.name, self.failure_reason)

        env = {**os.environ, **desc.env}

        logger.debug("Command: %s (cwd=%s)", " ".join(desc.argv), cwd or os.getcwd())
        try:
            self.process = await asyncio.create_subprocess_exec(
                *desc.argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group so signals reach the whole program tree
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            self._fail_spawn(f"executable not found: {desc.command}", exc)
        except PermissionError as exc:
            self._fail_spawn(f"permission denied: {desc.command}", exc)
        except NotADirectoryError as exc:
            self._fail_spawn(f"not a directory: {exc.filename}", exc)
        except OSError as exc:
            self._fail_spawn(str(exc), exc)

        self.started_at = asyncio.get_running_loop().time()
        self.stats = ProcessStats(started_at=datetime.now())
        self._transition(ProcessState.RUNNING)
        logger.info("%s started", self)

        self._setup_output()
        self._watcher = asyncio.create_task(self._watch_exit(), name=f"exit-{self.name}")

    def _fail_spawn(self, reason: str, exc: BaseException) -> None:
        self._transition(ProcessState.FAILED)
        self.failure_reason = reason
        logger.error("Failed to spawn %s: %s", self.name, reason)
        raise SpawnError(self.name, reason) from exc

    def _setup_output(self) -> None:
        assert self.process is not None
        router = self.router
        out_sink = router.sink_for(self.descriptor, "stdout") if router else NullSink()
        err_sink = router.sink_for(self.descriptor, "stderr") if router else NullSink()

        self.stdout = LineFanout(f"{self.name}.stdout", self.process.stdout, out_sink)
        self.stderr = LineFanout(f"{self.name}.stderr", self.process.stderr, err_sink)

        # Subscribe the readiness matcher before the first line is read
        criterion = self.descriptor.readiness
        if isinstance(criterion, OutputMatches):
            self._readiness_queue = self.stream(criterion.stream).subscribe()

        self.stdout.start()
        self.stderr.start()

    def stream(self, which: str) -> LineFanout:
        fanout = self.stderr if which == "stderr" else self.stdout
        if fanout is None:
            raise RuntimeError(f"Process not started: {self.name}")
        return fanout

    def readiness_lines(self, which: str) -> AsyncIterator[str]:
        """Lines of *which* stream for readiness matching.

        Returns the feed subscribed at spawn time when it matches the
        descriptor's criterion, so no early line is missed.
        """
        fanout = self.stream(which)
        criterion = self.descriptor.readiness
        if (
            self._readiness_queue is not None
            and isinstance(criterion, OutputMatches)
            and criterion.stream == which
        ):
            queue, self._readiness_queue = self._readiness_queue, None
            return fanout.lines(queue)
        return fanout.lines()

    async def _watch_exit(self) -> None:
        # Poll returncode rather than awaiting wait(): wait() also blocks
        # until every pipe is closed, which a background grandchild can
        # delay indefinitely.
        assert self.process is not None
        while self.process.returncode is None:
            await asyncio.sleep(_EXIT_POLL_SEC)
        code = self.process.returncode
        self.stats.exit_code = code
        self.stats.stopped_at = datetime.now()
        was = self.state
        self._transition(ProcessState.EXITED)
        self._exited.set()

        if was == ProcessState.TERMINATING:
            logger.debug("%s exited (code=%s)", self, code)
        elif code == 0:
            logger.info("%s exited (code=0)", self)
        else:
            logger.warning("%s died (code=%s)", self, code)

    # ── Lifecycle changes driven by the orchestrator ──────────────

    def mark_ready(self) -> None:
        self.stats.ready_at = datetime.now()
        # A completed one-shot program is ready and already gone
        if self.state != ProcessState.EXITED:
            self._transition(ProcessState.READY)

    def mark_failed(self, reason: str) -> None:
        self.failure_reason = reason
        if self.state != ProcessState.EXITED:
            self._transition(ProcessState.FAILED)

    # ── Wait / terminate ───────────────────────────────────────────

    def is_alive(self) -> bool:
        """Check if process is alive."""
        if self.process is None:
            return False
        return not self._exited.is_set()

    async def wait(self) -> int | None:
        """Block until the process has exited and return its exit code.

        Safe to call any number of times, before or after :meth:`terminate`.
        """
        if self.process is None:
            return None
        await self._exited.wait()
        return self.stats.exit_code

    async def _await_exit(self, timeout: float) -> None:
        try:
            async with asyncio.timeout(timeout):
                await self._exited.wait()
        except asyncio.TimeoutError:
            raise TerminationTimeout(
                f"{self} did not exit within {timeout:.1f}s"
            ) from None

    def _signal(self, sig: signal.Signals) -> None:
        assert self.process is not None
        if hasattr(os, "killpg"):
            os.killpg(self.process.pid, sig)
        else:
            self.process.send_signal(sig)

    async def terminate(self, grace_period: float) -> TerminationOutcome:
        """
        Stop the process: SIGTERM, then SIGKILL after *grace_period*.

        Returns:
            EXITED if the process went away on its own or after SIGTERM,
            FORCE_KILLED if it had to be killed.

        Raises:
            TerminationError: if the forced kill failed as well
        """
        if self.process is None or self.state == ProcessState.EXITED:
            logger.debug("Process already stopped: %s", self)
            await self._close_streams()
            return TerminationOutcome.EXITED

        if self.state != ProcessState.TERMINATING:
            self._transition(ProcessState.TERMINATING)
        self.stats.signalled = True

        logger.debug("Sending SIGTERM to %s", self)
        try:
            self._signal(signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process group of %s already gone", self)
        except OSError as exc:
            logger.warning("SIGTERM failed for %s: %s", self, exc)

        outcome = TerminationOutcome.EXITED
        try:
            await self._await_exit(grace_period)
        except TerminationTimeout as exc:
            logger.warning("%s, killing", exc)
            try:
                self._signal(signal.SIGKILL)
            except ProcessLookupError:
                logger.debug("Process group of %s already gone", self)
            except OSError as kill_exc:
                raise TerminationError(self.name, kill_exc) from kill_exc
            try:
                await self._await_exit(_KILL_WAIT_SEC)
            except TerminationTimeout as kill_timeout:
                raise TerminationError(self.name, "process survived SIGKILL") from kill_timeout
            self.stats.force_killed = True
            outcome = TerminationOutcome.FORCE_KILLED
            logger.warning("%s killed", self)
        else:
            logger.info("%s terminated", self)

        await self._close_streams()
        return outcome

    async def _close_streams(self) -> None:
        """Let output drain, then release the pipes."""
        for fanout in (self.stdout, self.stderr):
            if fanout is None:
                continue
            try:
                async with asyncio.timeout(_STREAM_DRAIN_SEC):
                    await fanout.wait_closed()
            except asyncio.TimeoutError:
                # A surviving grandchild may still hold the pipe open
                logger.debug("%s still open, closing", fanout.name)
            await fanout.aclose()


async def spawn(
    descriptor: ProgramDescriptor,
    router: OutputRouter | None = None,
) -> ProcessHandle:
    """Spawn *descriptor* and return its running handle.

    Raises:
        SpawnError: the process could not be launched
    """
    handle = ProcessHandle(descriptor, router)
    await handle.start()
    return handle
