from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml
from jsonschema import Draft202012Validator

from codex_exec.errors import ConfigError

logger = structlog.get_logger(__name__)

CONFIG_PATH_ENV = "CODEX_MCP_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.codex/codex-mcp.yaml")
SANDBOX_POLICIES = ("read-only", "workspace-write", "danger-full-access")

_CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "codex_bin": {"type": "string", "minLength": 1},
        "sandbox": {"enum": [*SANDBOX_POLICIES, None]},
        "model": {"type": ["string", "null"], "minLength": 1},
        "profile": {"type": ["string", "null"], "minLength": 1},
        "yolo": {"type": "boolean"},
        "skip_git_repo_check": {"type": "boolean"},
        "additional_args": {"type": "array", "items": {"type": "string"}},
        "default_timeout_secs": {"type": "integer", "minimum": 1},
        "max_timeout_secs": {"type": "integer", "minimum": 1},
        "return_all_messages": {"type": "boolean"},
        "all_messages_limit": {"type": "integer", "minimum": 1},
        "instructions_file": {"type": ["string", "null"]},
        "instructions_max_bytes": {"type": "integer", "minimum": 1},
    },
}


@dataclass(frozen=True)
class CodexConfig:
    codex_bin: str = "codex"
    sandbox: str | None = None
    model: str | None = None
    profile: str | None = None
    yolo: bool = False
    skip_git_repo_check: bool = False
    additional_args: tuple[str, ...] = ()
    default_timeout_secs: int = 600
    max_timeout_secs: int = 3600
    return_all_messages: bool = False
    all_messages_limit: int = 10_000
    instructions_file: str | None = "AGENTS.md"
    instructions_max_bytes: int = 1024 * 1024

    def resolve_timeout(self, requested: int | None) -> int:
        timeout = self.default_timeout_secs if requested is None else requested
        return max(1, min(timeout, self.max_timeout_secs))

    def invocation_flags(self) -> tuple[str, ...]:
        """Default `codex exec` flags for every request; `additional_args` come last."""
        flags: list[str] = []
        if self.sandbox:
            flags.extend(["--sandbox", self.sandbox])
        if self.model:
            flags.extend(["--model", self.model])
        if self.profile:
            flags.extend(["--profile", self.profile])
        if self.yolo:
            flags.append("--yolo")
        if self.skip_git_repo_check:
            flags.append("--skip-git-repo-check")
        flags.extend(self.additional_args)
        return tuple(flags)


def _format_schema_errors(data: Any) -> list[str]:
    validator = Draft202012Validator(_CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: str(e.path))
    formatted: list[str] = []
    for error in errors:
        path = "$"
        for part in error.path:
            path += f"[{part!r}]" if isinstance(part, int) else f".{part}"
        formatted.append(f"{path}: {error.message}")
    return formatted


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}", code="unreadable") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {path}: {e}", code="invalid_yaml") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path}, got {type(raw).__name__}.",
            code="not_a_mapping",
        )
    return raw


def config_from_mapping(data: dict[str, Any], *, source: str = "<mapping>") -> CodexConfig:
    problems = _format_schema_errors(data)
    if problems:
        raise ConfigError(
            f"Invalid codex-mcp configuration in {source}:\n" + "\n".join(problems),
            code="schema",
            details={"errors": problems},
        )

    defaults = CodexConfig()
    config = CodexConfig(
        codex_bin=data.get("codex_bin", defaults.codex_bin),
        sandbox=data.get("sandbox", defaults.sandbox),
        model=data.get("model", defaults.model),
        profile=data.get("profile", defaults.profile),
        yolo=data.get("yolo", defaults.yolo),
        skip_git_repo_check=data.get("skip_git_repo_check", defaults.skip_git_repo_check),
        additional_args=tuple(data.get("additional_args", defaults.additional_args)),
        default_timeout_secs=data.get("default_timeout_secs", defaults.default_timeout_secs),
        max_timeout_secs=data.get("max_timeout_secs", defaults.max_timeout_secs),
        return_all_messages=data.get("return_all_messages", defaults.return_all_messages),
        all_messages_limit=data.get("all_messages_limit", defaults.all_messages_limit),
        instructions_file=data.get("instructions_file", defaults.instructions_file),
        instructions_max_bytes=data.get(
            "instructions_max_bytes", defaults.instructions_max_bytes
        ),
    )
    if config.default_timeout_secs > config.max_timeout_secs:
        raise ConfigError(
            f"default_timeout_secs ({config.default_timeout_secs}) exceeds "
            f"max_timeout_secs ({config.max_timeout_secs}) in {source}.",
            code="timeout_range",
        )
    return config


def resolve_config_path(path: Path | str | None = None) -> tuple[Path, bool]:
    """
    Return the configuration path to read and whether it was explicitly selected.

    Precedence: `path` argument, then `$CODEX_MCP_CONFIG`, then the default location.
    """

    if path is not None:
        return Path(path).expanduser(), True
    raw = os.environ.get(CONFIG_PATH_ENV)
    if raw is not None and raw.strip():
        return Path(raw.strip()).expanduser(), True
    return DEFAULT_CONFIG_PATH.expanduser(), False


def load_config(path: Path | str | None = None) -> CodexConfig:
    config_path, explicit = resolve_config_path(path)
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}", code="missing")
        logger.debug("no codex-mcp config file, using defaults", path=str(config_path))
        return CodexConfig()

    config = config_from_mapping(_load_yaml_mapping(config_path), source=str(config_path))
    logger.info(
        "loaded codex-mcp config",
        path=str(config_path),
        additional_args=list(config.additional_args),
        default_timeout_secs=config.default_timeout_secs,
    )
    return config
