"""CLI command that runs the configured programs."""

# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from core.config import OutputMode, SystemConfig, load_config
from core.exceptions import ConfigError
from core.output import OutputRouter
from core.supervisor import Orchestrator, RunResult

logger = logging.getLogger(__name__)


def cmd_up(args: argparse.Namespace) -> None:
    """Start programs, wait for a signal, tear everything down."""
    try:
        config = load_config(Path(args.config))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        result = asyncio.run(
            run_system(
                config,
                selection=args.programs or None,
                with_dependencies=args.with_deps,
                output=args.output,
            )
        )
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    report(result)
    sys.exit(0 if result.ok else 1)


async def run_system(
    config: SystemConfig,
    selection: list[str] | None = None,
    with_dependencies: bool = False,
    output: str | None = None,
) -> RunResult:
    router = OutputRouter(default_mode=OutputMode(output) if output else config.output)
    orchestrator = Orchestrator.from_config(config, router)
    return await orchestrator.run(
        config.programs,
        selection=selection,
        with_dependencies=with_dependencies,
    )


def report(result: RunResult) -> None:
    """Print a one-line summary of the run outcome."""
    if result.failure is not None:
        print(f"Failed: {result.failure}", file=sys.stderr)
    elif result.interrupted:
        print("Interrupted during startup", file=sys.stderr)
    for name in result.premature_exits:
        print(
            f"{name} exited on its own with code {result.exit_codes.get(name)}",
            file=sys.stderr,
        )
    for err in result.teardown_errors:
        print(f"Teardown error: {err}", file=sys.stderr)
