# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

"""Centralized path resolution for Lineup.

All modules import directory paths from here instead of computing them ad-hoc.
Runtime data directory can be overridden via LINEUP_DATA_DIR environment variable.
"""

from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_DATA_DIR_NAME = ".lineup"


def get_data_dir() -> Path:
    """Return the runtime data directory, respecting LINEUP_DATA_DIR env var.

    Defaults to ``.lineup`` in the current working directory so that each
    project checkout keeps its own logs.
    """
    env_val = os.environ.get("LINEUP_DATA_DIR")
    if env_val:
        return Path(env_val).expanduser().resolve()
    return Path.cwd() / _DEFAULT_DATA_DIR_NAME


def get_log_dir() -> Path:
    return get_data_dir() / "logs"


def get_output_dir() -> Path:
    """Return the root directory for captured program output."""
    return get_data_dir() / "output"
