from __future__ import annotations

from collections.abc import Iterable

from codex_exec.models import ExecutionResult

MISSING_SESSION_ID_ERROR = "Failed to get SESSION_ID from the codex session."
MISSING_AGENT_MESSAGES_WARNING = (
    "No agent_messages returned; enable return_all_messages or check codex output for details."
)


def merge_exit_status(result: ExecutionResult, exit_code: int, stderr_output: str) -> None:
    result.exit_code = exit_code
    if exit_code != 0:
        result.success = False
        error_msg = result.error or f"codex command failed with exit code: {exit_code}"
        if stderr_output:
            error_msg = f"{error_msg}\nStderr: {stderr_output}"
        result.error = error_msg
    elif stderr_output:
        # On success, stderr is context for the caller, not a failure.
        result.add_warning(stderr_output)


def enforce_required_fields(result: ExecutionResult) -> ExecutionResult:
    if result.timed_out:
        return result

    if not result.session_id and not result.error:
        result.record_error(MISSING_SESSION_ID_ERROR)

    if not result.agent_messages:
        result.add_warning(MISSING_AGENT_MESSAGES_WARNING)

    return result


def finalize_result(
    result: ExecutionResult,
    *,
    exit_code: int,
    stderr_output: str,
    advisories: Iterable[str] = (),
) -> ExecutionResult:
    for advisory in advisories:
        result.add_warning(advisory)
    merge_exit_status(result, exit_code, stderr_output)
    return enforce_required_fields(result)
