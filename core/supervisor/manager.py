"""
Orchestrator - Starts programs in order and tears them down in reverse.
"""

# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from core.config.models import (
    DEFAULT_START_TIMEOUT,
    DEFAULT_TERMINATE_TIMEOUT,
    Manual,
    ProgramDescriptor,
    SystemConfig,
    resolve_selection,
)
from core.exceptions import (
    ProcessExitedBeforeReady,
    ReadinessTimeout,
    StartupError,
    TerminationError,
)
from core.logging_config import program_context
from core.output import OutputRouter
from core.supervisor.process_handle import ProcessHandle, TerminationOutcome, spawn
from core.supervisor.readiness import PORT_POLL_INTERVAL, ProbeResult, ProbeStatus, probe

logger = logging.getLogger(__name__)


# ── Session state ──────────────────────────────────────────────────

class Phase(Enum):
    """Phase of an orchestrator run."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    DONE = "done"


@dataclass
class OrchestratorSession:
    """Run-wide state, owned by the control task.

    ``handles`` is append-only during startup and only read (in reverse)
    during teardown; its order is the start order.
    """
    handles: list[ProcessHandle] = field(default_factory=list)
    phase: Phase = Phase.IDLE
    failure: StartupError | None = None
    teardown_order: list[str] = field(default_factory=list)
    teardown_errors: list[TerminationError] = field(default_factory=list)


@dataclass
class RunResult:
    """Terminal outcome of :meth:`Orchestrator.run`."""
    failure: StartupError | None = None
    interrupted: bool = False
    started: list[str] = field(default_factory=list)
    exit_codes: dict[str, int | None] = field(default_factory=dict)
    premature_exits: list[str] = field(default_factory=list)
    teardown_errors: list[TerminationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return (
            self.failure is None
            and not self.interrupted
            and not self.teardown_errors
            and not self.premature_exits
        )


# ── Orchestrator ───────────────────────────────────────────────────

class Orchestrator:
    """
    Control core for one run.

    Responsibilities:
    - Start selected programs one at a time, in declared order
    - Wait for each to become ready within its own deadline
    - Fail fast: abandon remaining programs on the first startup error
    - Tear down in strict reverse start order, one program at a time
    """

    def __init__(
        self,
        router: OutputRouter | None = None,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        start_timeout: float = DEFAULT_START_TIMEOUT,
        poll_interval: float = PORT_POLL_INTERVAL,
    ):
        self.router = router
        self.terminate_timeout = terminate_timeout
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval

        self.session = OrchestratorSession()
        self._sweep_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        config: SystemConfig,
        router: OutputRouter | None = None,
    ) -> Orchestrator:
        if router is None:
            router = OutputRouter(default_mode=config.output)
        return cls(
            router=router,
            terminate_timeout=config.terminate_timeout,
            start_timeout=config.start_timeout,
        )

    @property
    def phase(self) -> Phase:
        return self.session.phase

    @property
    def handles(self) -> tuple[ProcessHandle, ...]:
        return tuple(self.session.handles)

    # ── Startup ────────────────────────────────────────────────────

    async def start(
        self,
        descriptors: Iterable[ProgramDescriptor],
        selection: Iterable[str] | None = None,
        with_dependencies: bool = False,
    ) -> list[ProcessHandle]:
        """
        Start the selected programs in declared order.

        Each program must become ready before the next is spawned.  On
        the first failure every already-started program is torn down and
        the failure is raised once everything has settled.

        Args:
            descriptors: All configured programs, in declared order
            selection: Names to start (None = every enabled program)
            with_dependencies: Also start what the selected programs depend on

        Returns:
            The started handles, in start order

        Raises:
            SpawnError, ReadinessTimeout, ProcessExitedBeforeReady
            SelectionError: selection names unknown programs
        """
        if self.session.phase != Phase.IDLE:
            raise RuntimeError(f"Cannot start in phase {self.session.phase.value}")

        descriptors = list(descriptors)
        selected = resolve_selection(
            descriptors,
            set(selection) if selection is not None else None,
            with_dependencies=with_dependencies,
        )
        skipped = len(descriptors) - len(selected)

        self.session.phase = Phase.STARTING
        logger.info(
            "Starting %d program(s)%s",
            len(selected),
            f", {skipped} not selected" if skipped else "",
        )

        for descriptor in selected:
            try:
                with program_context(descriptor.name):
                    handle = await self._start_program(descriptor)
            except StartupError as exc:
                logger.error("Startup failed: %s", exc)
                self.session.failure = exc
                await self.shutdown()
                raise
            except asyncio.CancelledError:
                logger.info("Startup cancelled at %s", descriptor.name)
                await self.shutdown()
                raise

            if self.session.phase != Phase.STARTING:
                # shutdown() was requested while this program was starting
                logger.info("Shutdown requested during startup, stopping %s", handle)
                await self._stop_unlisted(handle)
                return list(self.session.handles)

            self.session.handles.append(handle)

        self.session.phase = Phase.RUNNING
        logger.info("All %d program(s) ready", len(self.session.handles))
        return list(self.session.handles)

    async def _start_program(self, descriptor: ProgramDescriptor) -> ProcessHandle:
        """Spawn one program and wait for it to become ready."""
        handle = await spawn(descriptor, self.router)

        criterion = descriptor.readiness
        timeout = descriptor.effective_timeout(self.start_timeout)
        # Manual confirmation is not bound by the start timeout
        deadline = None if isinstance(criterion, Manual) else handle.started_at + timeout
        logger.debug("Waiting for %s (%s, timeout %.1fs)", handle, criterion.describe(), timeout)

        try:
            result = await probe(handle, criterion, deadline, poll_interval=self.poll_interval)
        except asyncio.CancelledError:
            await self._stop_unlisted(handle)
            raise

        if result.ready:
            handle.mark_ready()
            elapsed = asyncio.get_running_loop().time() - handle.started_at
            logger.info("%s ready (%.2fs)", handle, elapsed)
            return handle

        handle.mark_failed(result.reason)
        error = self._startup_error(descriptor, result)
        logger.error("%s not ready: %s", handle, result.reason)
        await self._stop_unlisted(handle)
        raise error

    @staticmethod
    def _startup_error(descriptor: ProgramDescriptor, result: ProbeResult) -> StartupError:
        if result.status is ProbeStatus.TIMED_OUT:
            return ReadinessTimeout(descriptor.name, result.reason)
        if result.exited:
            return ProcessExitedBeforeReady(
                descriptor.name, result.reason, exit_code=result.exit_code,
            )
        return StartupError(descriptor.name, result.reason)

    async def _stop_unlisted(self, handle: ProcessHandle) -> None:
        """Terminate a program that never made it into ``handles``.

        A cancellation arriving meanwhile is re-raised only after the
        program has been stopped.
        """
        stopping = asyncio.create_task(self._terminate(handle), name=f"stop-{handle.name}")
        try:
            await asyncio.shield(stopping)
        except asyncio.CancelledError:
            logger.debug("Cancelled while stopping %s, finishing first", handle)
            await stopping
            raise

    async def _terminate(self, handle: ProcessHandle) -> None:
        """Terminate one program and record any termination error."""
        with program_context(handle.name):
            try:
                outcome = await handle.terminate(self.terminate_timeout)
                code = await handle.wait()
                if outcome is TerminationOutcome.FORCE_KILLED:
                    logger.debug("%s force killed (code=%s)", handle, code)
                else:
                    logger.debug("%s stopped (code=%s)", handle, code)
            except TerminationError as exc:
                logger.error("%s", exc)
                self.session.teardown_errors.append(exc)
            except Exception as exc:
                logger.exception("Unexpected error stopping %s", handle)
                self.session.teardown_errors.append(TerminationError(handle.name, exc))

    # ── Shutdown ───────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """
        Tear down every started program in reverse start order.

        Each program is terminated (SIGTERM, then SIGKILL after the grace
        period) and waited for before the previous one is signalled.
        Termination errors are collected and never stop the sweep.

        The sweep runs in its own task: cancelling a caller does not
        interrupt it, and every call (concurrent or later) waits for the
        same sweep to finish.
        """
        if self._sweep_task is None:
            self.session.phase = Phase.SHUTTING_DOWN
            self._sweep_task = asyncio.create_task(self._sweep(), name="shutdown")
        await asyncio.shield(self._sweep_task)

    async def _sweep(self) -> None:
        logger.info("Shutting down %d program(s)", len(self.session.handles))
        for handle in reversed(self.session.handles):
            self.session.teardown_order.append(handle.name)
            await self._terminate(handle)

        self.session.phase = Phase.DONE
        logger.info("All programs stopped")

    # ── Run mode ───────────────────────────────────────────────────

    async def wait_stopped(self, stop: asyncio.Event) -> None:
        """Wait until *stop* is set or every started program has exited."""
        stop_task = asyncio.create_task(stop.wait(), name="stop-request")
        exits = [
            asyncio.create_task(h.wait(), name=f"wait-{h.name}")
            for h in self.session.handles
        ]
        all_exited = asyncio.gather(*exits)
        try:
            done, _ = await asyncio.wait(
                {stop_task, all_exited}, return_when=asyncio.FIRST_COMPLETED,
            )
            if all_exited in done:
                logger.info("No running programs left")
        finally:
            for task in (stop_task, all_exited, *exits):
                task.cancel()
            await asyncio.gather(stop_task, all_exited, *exits, return_exceptions=True)

    def _install_signal_handlers(self, stop: asyncio.Event) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig, stop)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install handler for %s", sig.name)
                continue
            installed.append(sig)
        return installed

    @staticmethod
    def _on_signal(sig: signal.Signals, stop: asyncio.Event) -> None:
        logger.info("Received %s", sig.name)
        stop.set()

    async def run(
        self,
        descriptors: Iterable[ProgramDescriptor],
        selection: Iterable[str] | None = None,
        with_dependencies: bool = False,
        stop: asyncio.Event | None = None,
    ) -> RunResult:
        """
        Start everything, keep it running until asked to stop, then tear down.

        Stops on SIGINT/SIGTERM, when *stop* is set, or once every started
        program has exited on its own.
        """
        stop = stop or asyncio.Event()
        installed = self._install_signal_handlers(stop)
        result = RunResult()
        loop = asyncio.get_running_loop()

        try:
            start_task = asyncio.create_task(
                self.start(descriptors, selection, with_dependencies), name="startup",
            )
            stop_task = asyncio.create_task(stop.wait(), name="stop-request")
            done, _ = await asyncio.wait(
                {start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED,
            )

            if start_task in done:
                stop_task.cancel()
                await asyncio.gather(stop_task, return_exceptions=True)
                try:
                    start_task.result()
                except StartupError as exc:
                    result.failure = exc
                else:
                    await self.wait_stopped(stop)
            else:
                if self.session.phase in (Phase.IDLE, Phase.STARTING):
                    logger.info("Interrupted during startup")
                    result.interrupted = True
                    start_task.cancel()
                else:
                    # fail-fast teardown already under way, let it settle
                    logger.info("Stop requested during teardown")
                try:
                    await start_task
                except asyncio.CancelledError:
                    pass
                except StartupError as exc:
                    result.failure = exc
        finally:
            await self.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)

        result.started = [h.name for h in self.session.handles]
        result.exit_codes = {h.name: h.exit_code for h in self.session.handles}
        result.premature_exits = [
            h.name for h in self.session.handles
            if not h.stats.signalled and h.exit_code not in (0, None)
        ]
        result.teardown_errors = list(self.session.teardown_errors)
        return result
