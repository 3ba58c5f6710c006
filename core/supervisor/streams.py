# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0
"""Line fan-out for child process output.

A single reader task per stream broadcasts every line to the output sink
and to any number of subscriber queues (readiness matchers), so a line
consumed for matching is never lost to the log.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from core.output import OutputSink

logger = logging.getLogger(__name__)


class _Sentinel:
    """Queue termination marker: the stream reached EOF."""

    __slots__ = ()


_SENTINEL = _Sentinel()


class LineFanout:
    """Read lines from *reader* and fan them out to a sink plus subscribers."""

    def __init__(self, name: str, reader: asyncio.StreamReader, sink: OutputSink) -> None:
        self.name = name
        self._reader = reader
        self._sink = sink
        self._subscribers: list[asyncio.Queue] = []
        self._task: asyncio.Task | None = None
        self._eof = asyncio.Event()
        self.line_count = 0

    @property
    def at_eof(self) -> bool:
        return self._eof.is_set()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=f"fanout-{self.name}")

    def subscribe(self) -> asyncio.Queue:
        """Return a queue receiving every line read from now on.

        When the stream is already exhausted the queue holds only the EOF
        marker.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if self._eof.is_set():
            queue.put_nowait(_SENTINEL)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    async def lines(self, queue: asyncio.Queue | None = None) -> AsyncIterator[str]:
        """Iterate over lines until EOF, unsubscribing on exit.

        Pass a queue obtained from :meth:`subscribe` to start from the
        moment of subscription rather than from the first iteration.
        """
        if queue is None:
            queue = self.subscribe()
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _Sentinel):
                    return
                yield item
        finally:
            self.unsubscribe(queue)

    async def wait_closed(self) -> None:
        await self._eof.wait()

    async def _pump(self) -> None:
        try:
            while True:
                try:
                    raw = await self._reader.readline()
                except ValueError:
                    # Line exceeded the reader limit; readline() already dropped it.
                    logger.warning("Dropped overlong line on %s", self.name)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                self.line_count += 1
                try:
                    self._sink.write(line)
                except (OSError, ValueError):
                    logger.warning("Output sink failed for %s", self.name, exc_info=True)
                for queue in list(self._subscribers):
                    queue.put_nowait(line)
        finally:
            self._eof.set()
            for queue in self._subscribers:
                queue.put_nowait(_SENTINEL)
            self._subscribers.clear()
            self._sink.close()
            logger.debug("Stream closed: %s (%d lines)", self.name, self.line_count)

    async def aclose(self) -> None:
        """Cancel the pump if it is still reading and wait for it to settle."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
