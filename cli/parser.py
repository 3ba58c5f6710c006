# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import os
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lineup",
        description="Lineup - service orchestration for developers",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Override runtime data directory (default: ./.lineup or LINEUP_DATA_DIR)",
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command")

    # ── Up ────────────────────────────────────────────────
    p_up = sub.add_parser("up", help="Start programs and keep them running")
    p_up.add_argument("config", help="Configuration file (.toml, .yaml or .json)")
    p_up.add_argument(
        "programs", nargs="*", metavar="PROGRAM",
        help="Only start these programs (default: all enabled)",
    )
    p_up.add_argument(
        "--with-deps", action="store_true",
        help="Also start programs the selected ones depend on",
    )
    p_up.add_argument(
        "--output", choices=["terminal", "file", "null"], default=None,
        help="Override where program output goes",
    )
    p_up.set_defaults(func=_lazy_up)

    # ── Check ─────────────────────────────────────────────
    p_check = sub.add_parser("check", help="Validate a configuration file")
    p_check.add_argument("config", help="Configuration file")
    p_check.add_argument(
        "programs", nargs="*", metavar="PROGRAM",
        help="Show the start order for these programs only",
    )
    p_check.add_argument("--with-deps", action="store_true")
    p_check.set_defaults(func=_lazy_check)

    # ── List ──────────────────────────────────────────────
    p_list = sub.add_parser("list", help="List configured programs")
    p_list.add_argument("config", help="Configuration file")
    p_list.set_defaults(func=_lazy_list)

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    from dotenv import load_dotenv

    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.data_dir:
        os.environ["LINEUP_DATA_DIR"] = args.data_dir

    from core.logging_config import setup_logging
    from core.paths import get_log_dir

    level = "DEBUG" if args.debug else os.environ.get("LINEUP_LOG_LEVEL", "INFO")
    setup_logging(
        level=level,
        log_dir=get_log_dir() if args.command == "up" else None,
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


# ── Lazy command loaders ──────────────────────────────────


def _lazy_up(args: argparse.Namespace) -> None:
    from cli.commands.up import cmd_up

    cmd_up(args)


def _lazy_check(args: argparse.Namespace) -> None:
    from cli.commands.check import cmd_check

    cmd_check(args)


def _lazy_list(args: argparse.Namespace) -> None:
    from cli.commands.check import cmd_list

    cmd_list(args)
