# Lineup - Local Process Orchestrator
# Copyright (C) 2026 Lineup Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Lineup, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Central configuration module for Lineup.

Defines Pydantic models for the program list (TOML, YAML or JSON on disk)
and provides load / selection helpers.  Descriptors are frozen: the
orchestrator only ever reads them.
"""

from __future__ import annotations

import json
import logging
import re
import tomllib
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import (
    ConfigError,
    ConfigNotFoundError,
    ConfigValidationError,
    SelectionError,
)

logger = logging.getLogger("lineup.config")

DEFAULT_TERMINATE_TIMEOUT = 1.0
DEFAULT_START_TIMEOUT = 30.0
DEFAULT_HOST = "127.0.0.1"


# ---------------------------------------------------------------------------
# Output modes
# ---------------------------------------------------------------------------


class OutputMode(str, Enum):
    """Where a program's stdout/stderr lines are forwarded."""

    TERMINAL = "terminal"
    FILE = "file"
    NULL = "null"


# ---------------------------------------------------------------------------
# Readiness criteria
# ---------------------------------------------------------------------------


class _Criterion(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def describe(self) -> str:
        return self.kind  # type: ignore[attr-defined]


class Nothing(_Criterion):
    """Ready as soon as the process is spawned."""

    kind: Literal["nothing"] = "nothing"


class Manual(_Criterion):
    """Ready when the operator presses Enter.  Not bound by the start timeout."""

    kind: Literal["manual"] = "manual"


class Timer(_Criterion):
    """Ready after a fixed delay."""

    kind: Literal["timer"] = "timer"
    seconds: float = Field(gt=0)

    def describe(self) -> str:
        return f"timer {self.seconds}s"


class PortOpen(_Criterion):
    """Ready once a TCP connection to host:port succeeds."""

    kind: Literal["port"] = "port"
    host: str = DEFAULT_HOST
    port: int = Field(ge=1, le=65535)

    def describe(self) -> str:
        return f"port {self.host}:{self.port}"


class OutputMatches(_Criterion):
    """Ready once a line on *stream* matches *pattern*."""

    kind: Literal["output"] = "output"
    pattern: str
    stream: Literal["stdout", "stderr"] = "stdout"

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {v!r}: {exc}") from exc
        return v

    @property
    def regex(self) -> re.Pattern[str]:
        return re.compile(self.pattern)

    def describe(self) -> str:
        return f"{self.stream} ~ /{self.pattern}/"


class Completed(_Criterion):
    """Ready when the process exits successfully (one-shot setup steps)."""

    kind: Literal["completed"] = "completed"


class Healthcheck(_Criterion):
    """Ready once an HTTP GET against the endpoint answers 2xx."""

    kind: Literal["healthcheck"] = "healthcheck"
    host: str = DEFAULT_HOST
    port: int = Field(ge=1, le=65535)
    path: str = "/"

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"http://{self.host}:{self.port}{path}"

    def describe(self) -> str:
        return f"healthcheck {self.url}"


ReadinessCriterion = Annotated[
    Union[Nothing, Manual, Timer, PortOpen, OutputMatches, Completed, Healthcheck],
    Field(discriminator="kind"),
]

# Keys accepted in the ``ready = {key = value}`` shorthand.
_SHORTHAND_KINDS = frozenset({
    "nothing", "manual", "timer", "port", "stdout", "stderr",
    "completed", "healthcheck",
})


def _expand_ready_shorthand(raw: Any) -> Any:
    """Translate ``{port = 123}`` style tables into ``{kind = ...}`` form."""
    if raw is None:
        return {"kind": "nothing"}
    if isinstance(raw, str):
        if raw in ("nothing", "manual", "completed"):
            return {"kind": raw}
        raise ValueError(f"unknown ready signal {raw!r}")
    if not isinstance(raw, dict) or "kind" in raw:
        return raw
    if len(raw) != 1:
        raise ValueError(f"ready must name exactly one signal, got {sorted(raw)}")

    key, value = next(iter(raw.items()))
    if key not in _SHORTHAND_KINDS:
        raise ValueError(f"unknown ready signal {key!r}")

    if key in ("nothing", "manual", "completed"):
        return {"kind": key}
    if key == "timer":
        return {"kind": "timer", "seconds": value}
    if key == "port":
        if isinstance(value, dict):
            return {"kind": "port", **value}
        return {"kind": "port", "port": value}
    if key in ("stdout", "stderr"):
        if isinstance(value, dict):
            return {"kind": "output", "stream": key, **value}
        return {"kind": "output", "stream": key, "pattern": value}
    # healthcheck
    if isinstance(value, dict):
        return {"kind": "healthcheck", **value}
    return {"kind": "healthcheck", "port": value}


# ---------------------------------------------------------------------------
# Program descriptor
# ---------------------------------------------------------------------------


class ProgramDescriptor(BaseModel):
    """Static description of one program to run."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1)
    argv: tuple[str, ...]
    cwd: Path | None = None
    env: dict[str, str] = {}
    enabled: bool = True
    readiness: ReadinessCriterion = Field(default_factory=Nothing, alias="ready")
    timeout: float | None = Field(default=None, gt=0)
    depends: tuple[str, ...] = ()
    output: OutputMode | None = None

    @field_validator("argv")
    @classmethod
    def _argv_not_empty(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("need at least one argv argument")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @field_validator("readiness", mode="before")
    @classmethod
    def _expand_readiness(cls, v: Any) -> Any:
        return _expand_ready_shorthand(v)

    @property
    def command(self) -> str:
        return self.argv[0]

    @property
    def args(self) -> tuple[str, ...]:
        return self.argv[1:]

    def effective_timeout(self, default: float) -> float:
        return self.timeout if self.timeout is not None else default


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


class SystemConfig(BaseModel):
    """Top-level configuration: the ordered program list plus run settings."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    programs: list[ProgramDescriptor] = Field(alias="program")
    terminate_timeout: float = Field(default=DEFAULT_TERMINATE_TIMEOUT, gt=0)
    start_timeout: float = Field(default=DEFAULT_START_TIMEOUT, gt=0)
    output: OutputMode = OutputMode.TERMINAL

    @model_validator(mode="after")
    def _validate_programs(self) -> SystemConfig:
        if not self.programs:
            raise ValueError("no programs configured")

        seen: set[str] = set()
        for prog in self.programs:
            if prog.name in seen:
                raise ValueError(f"duplicate program name {prog.name!r}")
            for dep in prog.depends:
                if dep == prog.name:
                    raise ValueError(f"{prog.name!r} depends on itself")
                if dep not in seen:
                    raise ValueError(
                        f"{prog.name!r} depends on {dep!r}, which is not "
                        f"declared before it"
                    )
            seen.add(prog.name)
        return self


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


def _parse_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.error("Failed to read %s: %s", path, exc)
        raise ConfigError(f"failed to read {path}: {exc}") from exc

    try:
        if suffix == ".toml":
            return tomllib.loads(text)
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
            return data if data is not None else {}
        if suffix == ".json":
            return json.loads(text)
    except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as exc:
        logger.error("Failed to parse %s: %s", path, exc)
        raise ConfigError(f"failed to parse {path}: {exc}") from exc
    raise ConfigError(f"unsupported config format {suffix!r} (use .toml, .yaml or .json)")


def parse_config(data: dict[str, Any], source: str = "<memory>") -> SystemConfig:
    """Validate an already-decoded mapping into a :class:`SystemConfig`."""
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{source}: top level must be a table/mapping")
    try:
        return SystemConfig.model_validate(data)
    except ValidationError as exc:
        logger.error("Invalid configuration in %s: %s", source, exc)
        raise ConfigValidationError(f"{source}: {exc}") from exc


def load_config(path: Path) -> SystemConfig:
    """Load and validate the program list from *path*."""
    if not path.is_file():
        raise ConfigNotFoundError(f"config file not found: {path}")
    logger.debug("Loading config from %s", path)
    return parse_config(_parse_file(path), source=str(path))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def resolve_selection(
    programs: list[ProgramDescriptor],
    selection: list[str] | set[str] | None = None,
    with_dependencies: bool = False,
) -> list[ProgramDescriptor]:
    """Return the programs to run, in declared order.

    Without a selection every enabled program runs.  Naming a program
    explicitly selects it even when it is disabled.
    """
    by_name = {p.name: p for p in programs}

    if selection is None:
        return [p for p in programs if p.enabled]

    unknown = sorted(set(selection) - by_name.keys())
    if unknown:
        raise SelectionError(f"unknown program(s): {', '.join(unknown)}")

    wanted = set(selection)
    if with_dependencies:
        pending = list(wanted)
        while pending:
            for dep in by_name[pending.pop()].depends:
                if dep not in wanted:
                    wanted.add(dep)
                    pending.append(dep)

    return [p for p in programs if p.name in wanted]
