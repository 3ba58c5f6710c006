# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from cli.parser import cli_main

__all__ = ["cli_main"]
