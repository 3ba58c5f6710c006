# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0
"""Readiness probing.

:func:`probe` races the check for one readiness criterion against the
process exiting and against the program's deadline.  Strategies are
plain coroutines returning ``True`` once ready, or ``False`` when they
can no longer succeed (e.g. the watched stream closed); they never
decide about timeouts themselves.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from core.config.models import (
    Completed,
    Healthcheck,
    Manual,
    Nothing,
    OutputMatches,
    PortOpen,
    ReadinessCriterion,
    Timer,
)

if TYPE_CHECKING:
    from core.supervisor.process_handle import ProcessHandle

logger = logging.getLogger(__name__)

PORT_POLL_INTERVAL = 0.05      # seconds between connection attempts
HTTP_POLL_INTERVAL = 0.1       # seconds between healthcheck requests
_CONNECT_ATTEMPT_SEC = 1.0     # single connect/request attempt timeout
_EXIT_DRAIN_SEC = 0.25         # output still in the pipe when the process exited


class ProbeStatus(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a readiness probe."""
    status: ProbeStatus
    reason: str = ""
    exited: bool = False
    exit_code: int | None = None

    @property
    def ready(self) -> bool:
        return self.status is ProbeStatus.READY


READY = ProbeResult(ProbeStatus.READY)


# ── Strategies ─────────────────────────────────────────────────────


async def wait_nothing() -> bool:
    return True


async def wait_timer(seconds: float) -> bool:
    await asyncio.sleep(seconds)
    return True


async def wait_port(host: str, port: int, interval: float = PORT_POLL_INTERVAL) -> bool:
    """Poll until a TCP connection to host:port succeeds.

    Refused, unreachable and slow connects all just mean "not yet".
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            async with asyncio.timeout(_CONNECT_ATTEMPT_SEC):
                _reader, writer = await asyncio.open_connection(host, port)
        except (OSError, asyncio.TimeoutError) as exc:
            if attempts == 1 or attempts % 100 == 0:
                logger.debug("Port %s:%d not open yet (%s)", host, port, exc)
        else:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            logger.debug("Port %s:%d open after %d attempt(s)", host, port, attempts)
            return True
        await asyncio.sleep(interval)


async def wait_output(lines, criterion: OutputMatches) -> bool:
    """Consume *lines* until one matches; ``False`` if the stream ends first."""
    regex = criterion.regex
    try:
        async for line in lines:
            if regex.search(line.rstrip("\r\n")):
                logger.debug("Matched %s: %r", criterion.describe(), line.rstrip("\r\n"))
                return True
    finally:
        await lines.aclose()
    logger.debug("%s closed without a match", criterion.stream)
    return False


async def wait_healthcheck(url: str, interval: float = HTTP_POLL_INTERVAL) -> bool:
    """Poll *url* until it answers with a 2xx status."""
    async with httpx.AsyncClient(timeout=_CONNECT_ATTEMPT_SEC) as client:
        while True:
            try:
                response = await client.get(url)
                if response.is_success:
                    return True
                logger.debug("Healthcheck %s returned %d", url, response.status_code)
            except httpx.HTTPError as exc:
                logger.debug("Healthcheck %s failed: %s", url, exc)
            await asyncio.sleep(interval)


async def wait_manual(name: str) -> bool:
    """Wait for the operator to press Enter.

    Reads stdin on a daemon thread so an abandoned wait never blocks
    interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _read() -> None:
        line = sys.stdin.readline()
        if not loop.is_closed():
            loop.call_soon_threadsafe(_deliver, line)

    def _deliver(line: str) -> None:
        if not future.done():
            future.set_result(line)

    print(f"Manually waiting for {name}, press enter", file=sys.stderr, flush=True)
    threading.Thread(target=_read, name=f"manual-{name}", daemon=True).start()
    line = await future
    # EOF on stdin: nobody can ever confirm
    return line != ""


# ── Probe ──────────────────────────────────────────────────────────


def _strategy(handle: ProcessHandle, criterion: ReadinessCriterion, poll_interval: float):
    if isinstance(criterion, Nothing):
        return wait_nothing()
    if isinstance(criterion, Timer):
        return wait_timer(criterion.seconds)
    if isinstance(criterion, PortOpen):
        return wait_port(criterion.host, criterion.port, poll_interval)
    if isinstance(criterion, OutputMatches):
        return wait_output(handle.readiness_lines(criterion.stream), criterion)
    if isinstance(criterion, Healthcheck):
        return wait_healthcheck(criterion.url, max(poll_interval, HTTP_POLL_INTERVAL))
    if isinstance(criterion, Manual):
        return wait_manual(handle.name)
    raise TypeError(f"Unsupported readiness criterion: {criterion!r}")


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(0.0, deadline - asyncio.get_running_loop().time())


def _exited_result(handle: ProcessHandle) -> ProbeResult:
    code = handle.exit_code
    return ProbeResult(
        ProbeStatus.FAILED,
        reason=f"process exited with code {code} before becoming ready",
        exited=True,
        exit_code=code,
    )


def _timed_out(handle: ProcessHandle, criterion: ReadinessCriterion) -> ProbeResult:
    loop = asyncio.get_running_loop()
    elapsed = loop.time() - handle.started_at
    return ProbeResult(
        ProbeStatus.TIMED_OUT,
        reason=f"not ready after {elapsed:.2f}s (waiting for {criterion.describe()})",
    )


async def _probe_completed(handle: ProcessHandle, deadline: float | None) -> ProbeResult:
    try:
        async with asyncio.timeout(_remaining(deadline)):
            code = await handle.wait()
    except asyncio.TimeoutError:
        return _timed_out(handle, Completed())
    if code == 0:
        return READY
    return _exited_result(handle)


async def _cancel(*tasks: asyncio.Task) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Readiness task %s failed during cancel", task.get_name(), exc_info=True)


async def probe(
    handle: ProcessHandle,
    criterion: ReadinessCriterion,
    deadline: float | None,
    *,
    poll_interval: float = PORT_POLL_INTERVAL,
) -> ProbeResult:
    """Determine whether *handle* becomes ready according to *criterion*.

    Args:
        handle: A spawned process.
        criterion: Readiness criterion to evaluate.
        deadline: Absolute ``loop.time()`` by which readiness must be
            reached, or ``None`` for no limit.
        poll_interval: Interval between polling attempts.

    Returns:
        READY, TIMED_OUT at the deadline, or FAILED as soon as the
        process exits before becoming ready.
    """
    if isinstance(criterion, Completed):
        return await _probe_completed(handle, deadline)

    check = asyncio.create_task(
        _strategy(handle, criterion, poll_interval), name=f"ready-{handle.name}",
    )
    exited = asyncio.create_task(handle.wait(), name=f"exit-wait-{handle.name}")
    pending: set[asyncio.Task] = {check, exited}

    try:
        while True:
            done, _ = await asyncio.wait(
                pending,
                timeout=_remaining(deadline),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                return _timed_out(handle, criterion)

            if check in done:
                pending.discard(check)
                exc = check.exception()
                if exc is not None:
                    logger.error("Readiness check for %s failed: %s", handle, exc)
                    return ProbeResult(ProbeStatus.FAILED, reason=str(exc))
                if check.result():
                    return READY
                if isinstance(criterion, Manual):
                    return ProbeResult(
                        ProbeStatus.FAILED, reason="stdin closed before manual confirmation",
                    )
                # The check gave up; only exit or the deadline can settle it now

            if exited in done:
                # A match may still be sitting in the pipe
                if check in pending and isinstance(criterion, OutputMatches):
                    drained, _ = await asyncio.wait({check}, timeout=_EXIT_DRAIN_SEC)
                    if check in drained and check.exception() is None and check.result():
                        return READY
                return _exited_result(handle)
    finally:
        await _cancel(check, exited)
