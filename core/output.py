# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

"""Output routing for child process streams.

Every piped stream is read by exactly one :class:`core.supervisor.streams.LineFanout`,
which hands each line to the sink returned by :meth:`OutputRouter.sink_for`.
The router decides where lines end up (terminal, per-run log files or
nowhere); the process engine never looks at that decision.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Protocol, TextIO

from core.config.models import OutputMode, ProgramDescriptor

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Consumer of a single stream's lines."""

    def write(self, line: str) -> None: ...

    def close(self) -> None: ...


class NullSink:
    """Discard everything."""

    def write(self, line: str) -> None:
        pass

    def close(self) -> None:
        pass


class TerminalSink:
    """Forward lines to one of the orchestrator's own streams, prefixed with the program name."""

    def __init__(self, name: str, stream: TextIO) -> None:
        self.prefix = f"[{name}] "
        self.stream = stream

    def write(self, line: str) -> None:
        if not line.endswith("\n"):
            line += "\n"
        self.stream.write(self.prefix + line)
        self.stream.flush()

    def close(self) -> None:
        # The orchestrator's stdout/stderr outlive any single program.
        pass


class FileSink:
    """Append lines to a log file; opened lazily on first write."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: TextIO | None = None

    def write(self, line: str) -> None:
        if self._file is None:
            self._file = open(self.path, "a", encoding="utf-8")  # noqa: SIM115
            logger.debug("Opened output file %s", self.path)
        self._file.write(line)
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                logger.debug("Failed to close output file %s", self.path, exc_info=True)
            self._file = None


class OutputRouter:
    """Hands out one sink per (program, stream).

    File output goes to ``<root>/<timestamp>.<pid>/<name>.out|.err``; the
    run directory is created on first use and ``<root>/latest`` is pointed
    at it.
    """

    def __init__(
        self,
        default_mode: OutputMode = OutputMode.TERMINAL,
        output_root: Path | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.default_mode = default_mode
        self.output_root = output_root
        self._stdout = stdout
        self._stderr = stderr
        self._run_dir: Path | None = None

    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    def mode_for(self, descriptor: ProgramDescriptor) -> OutputMode:
        return descriptor.output or self.default_mode

    def sink_for(self, descriptor: ProgramDescriptor, stream: str) -> OutputSink:
        """Return the sink for *descriptor*'s ``stdout`` or ``stderr``."""
        mode = self.mode_for(descriptor)
        if mode == OutputMode.NULL:
            return NullSink()
        if mode == OutputMode.TERMINAL:
            if stream == "stderr":
                target = self._stderr or sys.stderr
            else:
                target = self._stdout or sys.stdout
            return TerminalSink(descriptor.name, target)

        suffix = "err" if stream == "stderr" else "out"
        return FileSink(self.ensure_run_dir() / f"{descriptor.name}.{suffix}")

    def ensure_run_dir(self) -> Path:
        if self._run_dir is not None:
            return self._run_dir
        if self.output_root is None:
            from core.paths import get_output_dir

            self.output_root = get_output_dir()

        dirname = f"{datetime.now().strftime('%Y-%m-%dT%H:%M:%S')}.{os.getpid()}"
        run_dir = self.output_root / dirname
        run_dir.mkdir(parents=True, exist_ok=True)

        latest = self.output_root / "latest"
        if latest.is_symlink() or latest.exists():
            try:
                latest.unlink()
            except OSError:
                logger.debug("Can't remove %s", latest, exc_info=True)
        try:
            latest.symlink_to(dirname)
        except OSError:
            # Symlinks may be unavailable (e.g. Windows without privileges)
            logger.debug("Can't create %s symlink", latest, exc_info=True)

        logger.info("Writing program output to %s", run_dir)
        self._run_dir = run_dir
        return run_dir
