"""CLI commands for inspecting a configuration without running it."""

# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from core.config import SystemConfig, load_config, resolve_selection
from core.exceptions import ConfigError


def _load_or_exit(path: str) -> SystemConfig:
    try:
        return load_config(Path(path))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_check(args: argparse.Namespace) -> None:
    """Validate a config file and print the start order."""
    config = _load_or_exit(args.config)
    try:
        selected = resolve_selection(
            config.programs,
            set(args.programs) if args.programs else None,
            with_dependencies=args.with_deps,
        )
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"{args.config}: OK ({len(config.programs)} program(s))")
    if not selected:
        print("Nothing would be started")
        return
    print("Start order:")
    for i, prog in enumerate(selected, 1):
        timeout = prog.effective_timeout(config.start_timeout)
        print(f"  {i}. {prog.name}  ready: {prog.readiness.describe()}  timeout: {timeout:g}s")


def cmd_list(args: argparse.Namespace) -> None:
    """List configured programs."""
    config = _load_or_exit(args.config)

    name_width = max(len(p.name) for p in config.programs)
    print(f"{'NAME':<{name_width}}  {'ENABLED':<7}  READY")
    print("-" * (name_width + 30))
    for prog in config.programs:
        enabled = "yes" if prog.enabled else "no"
        print(f"{prog.name:<{name_width}}  {enabled:<7}  {prog.readiness.describe()}")
        if prog.depends:
            print(f"{'':<{name_width}}  {'':<7}  depends: {', '.join(prog.depends)}")
