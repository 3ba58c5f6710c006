# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0
"""
Process lifecycle engine.

Spawns programs, probes their readiness and tears them down in reverse
start order.
"""

from __future__ import annotations

from core.supervisor.manager import Orchestrator, OrchestratorSession, Phase, RunResult
from core.supervisor.process_handle import (
    ProcessHandle,
    ProcessState,
    ProcessStats,
    TerminationOutcome,
    spawn,
)
from core.supervisor.readiness import ProbeResult, ProbeStatus, probe
from core.supervisor.streams import LineFanout

__all__ = [
    "LineFanout",
    "Orchestrator",
    "OrchestratorSession",
    "Phase",
    "ProbeResult",
    "ProbeStatus",
    "ProcessHandle",
    "ProcessState",
    "ProcessStats",
    "RunResult",
    "TerminationOutcome",
    "probe",
    "spawn",
]
