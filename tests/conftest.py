"""Shared test fixtures.

Runner tests use small ``/bin/sh`` scripts as fake ``opencode`` executables so
the real subprocess path is exercised.
"""

import itertools
import json
import stat
from pathlib import Path
from typing import Callable

import pytest

from agent_runner.runners.opencode.config import OpenCodeConfig
from agent_runner.runners.session_log import NullSessionLog

FakeOpenCode = Callable[..., str]


def text_line(text: str, **extra: object) -> str:
    return json.dumps({"type": "text", "part": {"text": text}, **extra})


def step_finish_line(tokens: dict, cost: float | None = None) -> str:
    part: dict = {"tokens": tokens}
    if cost is not None:
        part["cost"] = cost
    return json.dumps({"type": "step_finish", "part": part})


def step_start_line(session_id: str) -> str:
    return json.dumps({"type": "step_start", "sessionID": session_id})


@pytest.fixture
def fake_opencode(tmp_path: Path) -> FakeOpenCode:
    """Write an executable that prints ``lines`` and exits with ``exit_code``.

    Each invocation appends its arguments to ``<tmp_path>/calls.txt``.
    ``tail`` is extra shell run after the output (e.g. ``exec sleep 30``).
    """
    counter = itertools.count()
    calls = tmp_path / "calls.txt"

    def make(
        lines: list[str] | None = None,
        *,
        exit_code: int = 0,
        stderr: str = "",
        tail: str = "",
    ) -> str:
        script = tmp_path / f"opencode-{next(counter)}"
        body = ["#!/bin/sh", f'printf "%s\\n" "$*" >> "{calls}"']
        if lines:
            body += ["cat <<'__OPENCODE_EOF__'", *lines, "__OPENCODE_EOF__"]
        if stderr:
            body.append(f"printf '%s' '{stderr}' >&2")
        if tail:
            body.append(tail)
        body.append(f"exit {exit_code}")
        script.write_text("\n".join(body) + "\n")
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return str(script)

    return make


@pytest.fixture
def calls_file(tmp_path: Path) -> Path:
    return tmp_path / "calls.txt"


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., OpenCodeConfig]:
    def make(opencode_path: str, **overrides: object) -> OpenCodeConfig:
        return OpenCodeConfig(
            working_directory=str(tmp_path / "work"),
            home_dir=tmp_path / "home",
            opencode_path=opencode_path,
            **overrides,
        )

    return make


@pytest.fixture
def null_sink() -> NullSessionLog:
    return NullSessionLog()
