from __future__ import annotations

import os
import shutil
from pathlib import Path

from codex_exec.config import CodexConfig
from codex_exec.models import ExecutionRequest

CODEX_BIN_ENV = "CODEX_BIN"


def _resolve_executable(binary: str) -> str:
    p = Path(binary)
    if p.is_absolute():
        return str(p)

    # Treat anything with a path separator or drive letter as an explicit path, not a PATH lookup.
    if any(sep in binary for sep in ("/", "\\")) or (os.name == "nt" and ":" in binary):
        return binary

    resolved = shutil.which(binary)
    return resolved if resolved is not None else binary


def resolve_codex_binary(config: CodexConfig) -> str:
    override = os.environ.get(CODEX_BIN_ENV)
    binary = override if override else config.codex_bin
    return _resolve_executable(binary)


def build_codex_argv(
    request: ExecutionRequest,
    *,
    binary: str,
    prompt: str | None = None,
) -> list[str]:
    """
    Build the `codex exec` argument vector.

    Paths and the prompt are passed as discrete argv entries, never joined or shell-quoted.
    `prompt` overrides `request.prompt` when the caller has composed a longer one.
    """

    argv: list[str] = [binary, "exec", "--cd", str(request.working_dir), "--json"]
    argv.extend(request.additional_args)
    for image_path in request.image_paths:
        argv.extend(["--image", str(image_path)])
    if request.session_id:
        argv.extend(["resume", request.session_id])
    argv.extend(["--", prompt if prompt is not None else request.prompt])
    return argv


def scrub_prompt(argv: list[str]) -> list[str]:
    if not argv:
        return []
    scrubbed = argv.copy()
    scrubbed[-1] = "<prompt>"
    return scrubbed
