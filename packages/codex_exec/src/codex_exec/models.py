from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ExecutionRequest:
    prompt: str
    working_dir: Path
    session_id: str | None = None
    additional_args: tuple[str, ...] = ()
    image_paths: tuple[Path, ...] = ()
    timeout_secs: int | None = None


def push_warning(existing: str | None, warning: str) -> str:
    if not existing:
        return warning
    return f"{existing}\n{warning}"


@dataclass
class ExecutionResult:
    """
    Aggregate built while one Codex execution runs.

    `success` only ever moves from True to False. `error` and `warnings` are newline-joined
    logs: new entries are appended, earlier ones are never replaced.
    """

    success: bool = True
    session_id: str = ""
    agent_messages: str = ""
    agent_messages_truncated: bool = False
    all_messages: list[dict[str, Any]] = field(default_factory=list)
    all_messages_truncated: bool = False
    error: str | None = None
    warnings: str | None = None
    exit_code: int | None = None
    timed_out: bool = False

    def record_error(self, message: str) -> None:
        self.success = False
        if self.error:
            self.error = f"{self.error}\n{message}"
        else:
            self.error = message

    def add_warning(self, message: str) -> None:
        self.warnings = push_warning(self.warnings, message)
