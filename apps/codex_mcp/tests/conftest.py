from __future__ import annotations

import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_codex_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's CODEX_BIN / config file out of the tests."""
    monkeypatch.delenv("CODEX_BIN", raising=False)
    monkeypatch.delenv("CODEX_MCP_CONFIG", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def make_dummy_codex(tmp_path: Path) -> Callable[[list[str]], str]:
    """
    Return a factory writing a fake `codex` binary whose body is the given Python lines.

    The wrapper `exec`s the interpreter so killing the wrapper kills the script.
    """

    counter = {"n": 0}

    def _make(body: list[str]) -> str:
        if os.name == "nt":
            pytest.skip("dummy codex wrappers are POSIX shell scripts")
        counter["n"] += 1
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        script = bin_dir / f"dummy_codex_{counter['n']}.py"
        script.write_text(
            "\n".join(["import json", "import os", "import sys", "import time", "", *body, ""]),
            encoding="utf-8",
            newline="\n",
        )
        wrapper = bin_dir / f"dummy_codex_{counter['n']}.sh"
        wrapper.write_text(
            "\n".join(["#!/bin/sh", f'exec "{sys.executable}" "{script}" "$@"', ""]),
            encoding="utf-8",
            newline="\n",
        )
        wrapper.chmod(0o755)
        return str(wrapper)

    return _make
