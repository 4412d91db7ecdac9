from __future__ import annotations

from typing import Any


class CodexExecError(RuntimeError):
    pass


class CodexLaunchError(CodexExecError):
    """The Codex process could not be spawned or its pipes were unavailable."""


class ConfigError(ValueError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
