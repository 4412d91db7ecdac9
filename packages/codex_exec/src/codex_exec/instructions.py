from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from codex_exec.config import CodexConfig

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Instructions:
    text: str | None = None
    warnings: list[str] = field(default_factory=list)


def _decode_instructions(raw: bytes, *, name: str, truncated: bool) -> tuple[str, list[str]]:
    warnings: list[str] = []
    try:
        return raw.decode("utf-8"), warnings
    except UnicodeDecodeError as e:
        # A cut at the byte limit can split one multi-byte character; drop just that tail.
        if truncated and e.reason == "unexpected end of data":
            return raw[: e.start].decode("utf-8"), warnings
        warnings.append(f"{name} is not valid UTF-8; invalid bytes were replaced.")
        return raw.decode("utf-8", errors="replace"), warnings


def load_instructions(working_dir: Path, config: CodexConfig) -> Instructions:
    """
    Read the supplementary instructions file (AGENTS.md by default) from the working directory.

    Problems with the file never fail the execution; they come back as warnings.
    """

    if not config.instructions_file:
        return Instructions()

    path = working_dir / config.instructions_file
    name = config.instructions_file
    limit = config.instructions_max_bytes
    if not path.is_file():
        return Instructions()

    try:
        with path.open("rb") as f:
            raw = f.read(limit + 1)
    except OSError as e:
        logger.warning("failed to read instructions file", path=str(path), error=str(e))
        return Instructions(warnings=[f"Failed to read {name}: {e}"])

    warnings: list[str] = []
    truncated = len(raw) > limit
    if truncated:
        raw = raw[:limit]
        warnings.append(f"{name} exceeds {limit} bytes; truncated to the first {limit} bytes.")

    text, decode_warnings = _decode_instructions(raw, name=name, truncated=truncated)
    warnings.extend(decode_warnings)
    if not text.strip():
        return Instructions(warnings=warnings)
    return Instructions(text=text, warnings=warnings)


def compose_prompt(prompt: str, instructions: Instructions) -> str:
    if not instructions.text:
        return prompt
    return f"<system_prompt>\n{instructions.text}\n</system_prompt>\n\n{prompt}"
