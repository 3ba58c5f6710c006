"""Unit tests for core/logging_config.py - structlog-based logging setup."""
# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

import orjson
import pytest
import structlog

from core.logging_config import program_context, setup_logging


# ── Program contextvars ───────────────────────────────────


def _bound_program() -> str | None:
    return structlog.contextvars.get_contextvars().get("program")


class TestProgramContext:
    def test_unbound_by_default(self):
        assert _bound_program() is None

    def test_binds_inside_block(self):
        with program_context("db"):
            assert _bound_program() == "db"
        assert _bound_program() is None

    def test_nested_blocks_restore(self):
        with program_context("outer"):
            with program_context("inner"):
                assert _bound_program() == "inner"
            assert _bound_program() == "outer"


# ── setup_logging ─────────────────────────────────────────


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _reset_logging(self):
        """Reset root logger after each test."""
        yield
        root = logging.getLogger()
        for h in root.handlers:
            h.close()
        root.handlers.clear()
        root.setLevel(logging.WARNING)

    def test_console_only(self):
        setup_logging(level="DEBUG", log_dir=None)
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], logging.StreamHandler)
        assert root.handlers[0].stream is sys.stderr

    def test_with_file_handler_json(self, tmp_path):
        setup_logging(level="INFO", log_dir=tmp_path, json_file=True)
        root = logging.getLogger()
        assert root.level == logging.INFO
        handler_types = [type(h).__name__ for h in root.handlers]
        assert handler_types.count("RotatingFileHandler") == 1
        assert (tmp_path / "lineup.log").exists()

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(level="CHATTY")
        assert logging.getLogger().level == logging.INFO

    def test_repeat_setup_does_not_duplicate_handlers(self, tmp_path):
        setup_logging(log_dir=tmp_path)
        setup_logging(log_dir=tmp_path)
        assert len(logging.getLogger().handlers) == 2

    def test_json_file_carries_program(self, tmp_path):
        setup_logging(level="INFO", log_dir=tmp_path, json_file=True)
        with program_context("api"):
            logging.getLogger("lineup.test").info("hello %s", "world")
        for h in logging.getLogger().handlers:
            h.flush()

        lines = (tmp_path / "lineup.log").read_bytes().splitlines()
        record = orjson.loads(lines[-1])
        assert record["event"] == "hello world"
        assert record["program"] == "api"
        assert record["level"] == "info"

    def test_plain_file_format(self, tmp_path):
        setup_logging(level="INFO", log_dir=tmp_path, json_file=False)
        logging.getLogger("lineup.test").warning("plain text")
        for h in logging.getLogger().handlers:
            h.flush()
        text = (tmp_path / "lineup.log").read_text()
        assert "plain text" in text
        assert not text.lstrip().startswith("{")

    def test_third_party_loggers_quieted(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("asyncio").level == logging.WARNING

    def test_structlog_logger_usable(self, tmp_path):
        setup_logging(level="INFO", log_dir=tmp_path)
        structlog.get_logger("lineup.test").info("structured", port=9001)
        for h in logging.getLogger().handlers:
            h.flush()
        record = orjson.loads((tmp_path / "lineup.log").read_bytes().splitlines()[-1])
        assert record["port"] == 9001

    def test_file_handler_rotation_settings(self, tmp_path):
        setup_logging(log_dir=tmp_path)
        fh = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)][0]
        assert fh.maxBytes == 10 * 1024 * 1024
        assert fh.backupCount == 5
