from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Iterable, Sequence
from typing import IO

import structlog

from codex_exec.accumulator import EventAccumulator
from codex_exec.command import build_codex_argv, resolve_codex_binary, scrub_prompt
from codex_exec.config import CodexConfig
from codex_exec.drain import DiagnosticBuffer, drain_diagnostics, drain_events
from codex_exec.errors import CodexLaunchError
from codex_exec.finalize import finalize_result
from codex_exec.instructions import compose_prompt, load_instructions
from codex_exec.models import ExecutionRequest, ExecutionResult

logger = structlog.get_logger(__name__)


def _kill_process_tree(proc: subprocess.Popen[bytes]) -> None:
    """Send SIGKILL to the child's process group without waiting for it to exit."""

    if proc.poll() is not None:
        return
    try:
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.kill()
        except OSError:
            pass


def _spawn(argv: list[str]) -> tuple[subprocess.Popen[bytes], IO[bytes], IO[bytes]]:
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # Own process group, so a kill also reaches anything the CLI spawned.
            start_new_session=os.name != "nt",
        )
    except OSError as e:
        raise CodexLaunchError(
            "Could not launch Codex CLI process. "
            f"binary={argv[0]!r} argv={scrub_prompt(argv)!r}: {e}. "
            "Ensure `codex` is installed and on PATH, or set CODEX_BIN to the full path."
        ) from e

    if proc.stdout is None or proc.stderr is None:
        _kill_process_tree(proc)
        raise CodexLaunchError("Codex CLI process started without stdout/stderr pipes.")
    return proc, proc.stdout, proc.stderr


def timeout_result(timeout_secs: int, advisories: Iterable[str] = ()) -> ExecutionResult:
    result = ExecutionResult(
        success=False,
        error=f"Codex execution timed out after {timeout_secs} seconds",
        timed_out=True,
    )
    for advisory in advisories:
        result.add_warning(advisory)
    return result


def _reap(proc: subprocess.Popen[bytes], drains: Sequence[threading.Thread]) -> None:
    proc.wait()
    # Pipes are closed only once their drain threads have seen EOF.
    for drain in drains:
        drain.join()
    for pipe in (proc.stdout, proc.stderr):
        if pipe is not None:
            pipe.close()


def _abandon(
    proc: subprocess.Popen[bytes],
    drains: Sequence[threading.Thread],
    *,
    timeout_secs: int,
    advisories: Iterable[str],
) -> ExecutionResult:
    logger.warning("codex execution timed out", pid=proc.pid, timeout_secs=timeout_secs)
    _kill_process_tree(proc)
    threading.Thread(
        target=_reap,
        args=(proc, drains),
        name="codex-reaper",
        daemon=True,
    ).start()
    return timeout_result(timeout_secs, advisories)


def run_codex(request: ExecutionRequest, config: CodexConfig | None = None) -> ExecutionResult:
    """
    Run one `codex exec --json` invocation to completion or until its deadline.

    stdout is parsed as NDJSON on one thread while stderr is captured on another, so neither
    pipe can fill up and stall the child. Recoverable problems end up in the result's `error`
    and `warnings`; only a failed launch raises (`CodexLaunchError`).
    """

    config = config or CodexConfig()
    timeout_secs = config.resolve_timeout(request.timeout_secs)
    deadline = time.monotonic() + timeout_secs

    instructions = load_instructions(request.working_dir, config)
    argv = build_codex_argv(
        request,
        binary=resolve_codex_binary(config),
        prompt=compose_prompt(request.prompt, instructions),
    )

    log = logger.bind(working_dir=str(request.working_dir), resume=bool(request.session_id))
    log.info("launching codex", argv=scrub_prompt(argv), timeout_secs=timeout_secs)

    proc, stdout, stderr = _spawn(argv)

    result = ExecutionResult()
    accumulator = EventAccumulator(result, message_limit=config.all_messages_limit)
    diagnostics = DiagnosticBuffer()

    def _on_fatal() -> None:
        log.warning("killing codex after unrecoverable stdout error", pid=proc.pid)
        _kill_process_tree(proc)

    stdout_thread = threading.Thread(
        target=drain_events,
        args=(stdout, accumulator),
        kwargs={"on_fatal": _on_fatal},
        name="codex-stdout",
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=drain_diagnostics,
        args=(stderr, diagnostics),
        name="codex-stderr",
        daemon=True,
    )
    stderr_thread.start()
    stdout_thread.start()
    drains = (stdout_thread, stderr_thread)

    def _remaining() -> float:
        return max(0.0, deadline - time.monotonic())

    stdout_thread.join(timeout=_remaining())
    if stdout_thread.is_alive():
        return _abandon(proc, drains, timeout_secs=timeout_secs, advisories=instructions.warnings)

    try:
        exit_code = proc.wait(timeout=_remaining())
    except subprocess.TimeoutExpired:
        return _abandon(proc, drains, timeout_secs=timeout_secs, advisories=instructions.warnings)

    stderr_thread.join(timeout=_remaining())
    if stderr_thread.is_alive():
        return _abandon(proc, drains, timeout_secs=timeout_secs, advisories=instructions.warnings)

    stdout.close()
    stderr.close()

    finalize_result(
        result,
        exit_code=exit_code,
        stderr_output=diagnostics.getvalue(),
        advisories=instructions.warnings,
    )
    log.info(
        "codex finished",
        exit_code=exit_code,
        success=result.success,
        session_id=result.session_id,
        events=len(result.all_messages),
        agent_messages_truncated=result.agent_messages_truncated,
    )
    return result
