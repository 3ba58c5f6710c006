from __future__ import annotations
# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

"""Unified exception hierarchy for Lineup.

All domain-specific exceptions derive from :class:`LineupError`,
enabling callers to catch the entire family with a single clause::

    try:
        ...
    except LineupError as e:
        logger.error("Domain error: %s", e)
"""


class LineupError(Exception):
    """Base exception for all Lineup errors."""


# ── Configuration ────────────────────────────────────────────


class ConfigError(LineupError):
    """Configuration errors."""


class ConfigNotFoundError(ConfigError):
    """Configuration file not found."""


class ConfigValidationError(ConfigError):
    """Configuration validation failure."""


class SelectionError(ConfigError):
    """Requested program selection names unknown programs."""


# ── Process lifecycle ────────────────────────────────────────


class ProcessError(LineupError):
    """Process lifecycle errors."""


class StartupError(ProcessError):
    """A program could not be brought to the ready state.

    Fatal to the startup phase: remaining programs are never started and
    the ones already running are torn down before this is reported.
    """

    kind = "startup"

    def __init__(self, program: str, cause: str | BaseException) -> None:
        self.program = program
        self.cause = cause
        super().__init__(f"{program}: {self.kind}: {cause}")


class SpawnError(StartupError):
    """Executable, working directory or permission problem at launch."""

    kind = "spawn error"


class ReadinessTimeout(StartupError):
    """Process spawned but did not signal readiness within its deadline."""

    kind = "readiness timeout"


class ProcessExitedBeforeReady(StartupError):
    """Process exited during its readiness wait."""

    kind = "exited before ready"

    def __init__(
        self,
        program: str,
        cause: str | BaseException,
        *,
        exit_code: int | None = None,
    ) -> None:
        self.exit_code = exit_code
        super().__init__(program, cause)


class TerminationTimeout(ProcessError):
    """Process ignored the graceful termination request within its grace period.

    Recovered locally by escalating to a forced kill.
    """


class TerminationError(ProcessError):
    """Termination of a process failed, including the forced kill."""

    def __init__(self, program: str, cause: str | BaseException) -> None:
        self.program = program
        self.cause = cause
        super().__init__(f"{program}: termination failed: {cause}")
