# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0
"""Global test fixtures for Lineup.

Provides runtime data directory isolation, a quiet logging baseline and
a safety net that kills child process groups a failing test left behind.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

import pytest
import structlog

from core.output import OutputRouter
from core.config import OutputMode

logger = logging.getLogger(__name__)


# ── CLI options ───────────────────────────────────────────


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--skip-integration",
        action="store_true",
        default=False,
        help="Skip tests that spawn real subprocesses",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not config.getoption("--skip-integration"):
        return
    skip = pytest.mark.skip(reason="--skip-integration given")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


# ── Isolation ─────────────────────────────────────────────


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect ``LINEUP_DATA_DIR`` to a per-test temp directory."""
    d = tmp_path / "lineup-data"
    monkeypatch.setenv("LINEUP_DATA_DIR", str(d))
    monkeypatch.delenv("LINEUP_LOG_LEVEL", raising=False)
    return d


@pytest.fixture(autouse=True)
def _clear_log_context():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def null_router() -> OutputRouter:
    """Router that discards all child output."""
    return OutputRouter(default_mode=OutputMode.NULL)


@pytest.fixture
def reap():
    """Collect spawned handles; SIGKILL any process group still alive at teardown."""
    handles: list = []
    yield handles
    for handle in handles:
        process = getattr(handle, "process", None)
        if process is None or process.returncode is not None:
            continue
        logger.info("Killing leftover process group %s", process.pid)
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
