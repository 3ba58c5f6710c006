# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from core.config.models import (
    DEFAULT_START_TIMEOUT,
    DEFAULT_TERMINATE_TIMEOUT,
    Completed,
    Healthcheck,
    Manual,
    Nothing,
    OutputMatches,
    OutputMode,
    PortOpen,
    ProgramDescriptor,
    ReadinessCriterion,
    SystemConfig,
    Timer,
    load_config,
    parse_config,
    resolve_selection,
)
