from __future__ import annotations

import argparse
import asyncio
import json
import os
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from mcp.server.fastmcp.exceptions import ToolError

from codex_exec import ConfigError, load_config
from codex_exec.command import CODEX_BIN_ENV, resolve_codex_binary
from codex_exec.config import resolve_config_path
from codex_mcp import __version__
from codex_mcp.logging_setup import configure_logging
from codex_mcp.server import run_codex_tool, serve


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-mcp",
        description="MCP server and runner for non-interactive Codex CLI sessions.",
    )
    parser.add_argument("--version", action="store_true", help="Print package version and exit.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a codex-mcp YAML config (default: $CODEX_MCP_CONFIG or "
        "~/.codex/codex-mcp.yaml).",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO).")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("version", help="Print package version.")
    subparsers.add_parser("serve", help="Run the MCP server over stdio (default).")

    doctor = subparsers.add_parser("doctor", help="Check the config file and codex binary.")
    doctor.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")

    exec_parser = subparsers.add_parser("exec", help="Run one Codex session and print JSON.")
    exec_parser.add_argument("prompt", help="Instruction for the task to send to codex.")
    exec_parser.add_argument(
        "--image",
        dest="images",
        action="append",
        default=[],
        help="Attach an image file (repeatable).",
    )
    exec_parser.add_argument("--session-id", default=None, help="Resume an earlier session.")
    exec_parser.add_argument(
        "--cd",
        dest="working_dir",
        type=Path,
        default=None,
        help="Working directory for codex (default: current directory).",
    )
    return parser


def _doctor_payload(config_path: Path | None) -> dict[str, Any]:
    resolved_path, explicit = resolve_config_path(config_path)
    config = load_config(config_path)
    binary = resolve_codex_binary(config)
    return {
        "codex_mcp_version": __version__,
        "config_path": str(resolved_path),
        "config_found": resolved_path.exists(),
        "config_explicit": explicit,
        "codex_bin": binary,
        "codex_bin_source": CODEX_BIN_ENV if os.environ.get(CODEX_BIN_ENV) else "config",
        "codex_available": shutil.which(binary) is not None,
    }


def _print_doctor(payload: dict[str, Any], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    print(f"codex-mcp version: {payload['codex_mcp_version']}")
    found = "" if payload["config_found"] else " (not found, using defaults)"
    print(f"config: {payload['config_path']}{found}")
    rendered = payload["codex_bin"] if payload["codex_available"] else "<missing>"
    print(f"codex ({payload['codex_bin_source']}): {rendered}")


def _run_exec(args: argparse.Namespace, *, config_path: Path | None) -> int:
    config = load_config(config_path)
    try:
        output = asyncio.run(
            run_codex_tool(
                prompt=args.prompt,
                images=args.images,
                session_id=args.session_id,
                config=config,
                working_dir=args.working_dir,
            )
        )
    except ToolError as e:
        print(f"codex-mcp: {e}", file=sys.stderr)
        return 2

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0 if output.get("success") else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version or args.command == "version":
        print(__version__)
        return 0

    configure_logging(args.log_level)

    try:
        if args.command == "exec":
            return _run_exec(args, config_path=args.config)
        if args.command == "doctor":
            payload = _doctor_payload(args.config)
            _print_doctor(payload, as_json=bool(args.json))
            return 0 if payload["codex_available"] else 1
        serve(load_config(args.config))
    except ConfigError as e:
        print(f"codex-mcp: {e}", file=sys.stderr)
        return 2
    return 0
