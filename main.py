# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

"""Entry point: ``python main.py up lineup.toml``."""

from cli import cli_main

if __name__ == "__main__":
    cli_main()
