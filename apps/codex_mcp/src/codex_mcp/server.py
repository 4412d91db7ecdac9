"""MCP stdio server exposing a single `codex` tool backed by `codex_exec.run_codex`."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any

import structlog
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from codex_exec import CodexConfig, CodexLaunchError, ExecutionRequest, ExecutionResult, run_codex

logger = structlog.get_logger(__name__)

SERVER_NAME = "codex-mcp"
SERVER_INSTRUCTIONS = (
    "This server provides a codex tool for AI-assisted coding tasks. "
    "Use the codex tool to execute coding tasks via the Codex CLI."
)
TOOL_DESCRIPTION = (
    "Executes a non-interactive Codex session via CLI to perform AI-assisted coding tasks. "
    "Wraps `codex exec`, and supports resuming an earlier session via SESSION_ID."
)


def _resolve_working_dir(working_dir: Path | None) -> Path:
    candidate = working_dir if working_dir is not None else Path.cwd()
    try:
        canonical = candidate.resolve(strict=True)
    except OSError as e:
        raise ToolError(
            f"working directory does not exist or is not accessible: {candidate} ({e})"
        ) from e
    if not canonical.is_dir():
        raise ToolError(f"working directory is not a directory: {candidate}")
    return canonical


def _resolve_image_paths(images: Sequence[str], *, working_dir: Path) -> tuple[Path, ...]:
    resolved: list[Path] = []
    for raw in images:
        image_path = Path(raw)
        candidate = image_path if image_path.is_absolute() else working_dir / image_path
        try:
            canonical = candidate.resolve(strict=True)
        except OSError as e:
            raise ToolError(
                f"image file does not exist or is not accessible: {candidate} ({e})"
            ) from e
        if not canonical.is_file():
            raise ToolError(f"image path is not a file: {candidate}")
        resolved.append(canonical)
    return tuple(resolved)


def build_request(
    *,
    prompt: str,
    images: Sequence[str] = (),
    session_id: str | None = None,
    working_dir: Path | None = None,
    config: CodexConfig,
    timeout_secs: int | None = None,
) -> ExecutionRequest:
    if not isinstance(prompt, str) or not prompt:
        raise ToolError("PROMPT is required and must be a non-empty string")

    canonical_dir = _resolve_working_dir(working_dir)
    image_paths = _resolve_image_paths(images, working_dir=canonical_dir)
    resume = session_id.strip() if isinstance(session_id, str) else None

    return ExecutionRequest(
        prompt=prompt,
        working_dir=canonical_dir,
        session_id=resume or None,
        additional_args=config.invocation_flags(),
        image_paths=image_paths,
        timeout_secs=timeout_secs,
    )


def build_tool_output(result: ExecutionResult, *, return_all_messages: bool) -> dict[str, Any]:
    output: dict[str, Any] = {
        "success": result.success,
        "SESSION_ID": result.session_id,
        "message": result.agent_messages,
    }
    if result.agent_messages_truncated:
        output["agent_messages_truncated"] = True
    if return_all_messages:
        output["all_messages"] = result.all_messages
        if result.all_messages_truncated:
            output["all_messages_truncated"] = True
    if result.error is not None:
        output["error"] = result.error
    if result.warnings is not None:
        output["warnings"] = result.warnings
    return output


async def run_codex_tool(
    *,
    prompt: str,
    images: Sequence[str] = (),
    session_id: str | None = None,
    config: CodexConfig,
    working_dir: Path | None = None,
) -> dict[str, Any]:
    request = build_request(
        prompt=prompt,
        images=images,
        session_id=session_id,
        working_dir=working_dir,
        config=config,
    )
    try:
        result = await asyncio.to_thread(run_codex, request, config)
    except CodexLaunchError as e:
        logger.error("codex launch failed", error=str(e))
        raise ToolError(f"Failed to execute codex: {e}") from e
    # Always return the structured payload so callers can inspect success, error and warnings.
    return build_tool_output(result, return_all_messages=config.return_all_messages)


def create_server(config: CodexConfig) -> FastMCP:
    server = FastMCP(SERVER_NAME, instructions=SERVER_INSTRUCTIONS)

    @server.tool(name="codex", description=TOOL_DESCRIPTION)
    async def codex(
        PROMPT: Annotated[  # noqa: N803
            str, Field(description="Instruction for task to send to codex")
        ],
        images: Annotated[
            list[str] | None,
            Field(description="Attach one or more image files to the initial prompt."),
        ] = None,
        SESSION_ID: Annotated[  # noqa: N803
            str | None,
            Field(
                description=(
                    "Resume a previously started Codex session. Must be the exact SESSION_ID "
                    "returned by an earlier codex tool call. If omitted, a new session is created."
                )
            ),
        ] = None,
    ) -> dict[str, Any]:
        return await run_codex_tool(
            prompt=PROMPT,
            images=images or [],
            session_id=SESSION_ID,
            config=config,
        )

    return server


def serve(config: CodexConfig) -> None:
    logger.info("starting codex-mcp server", transport="stdio")
    create_server(config).run()
