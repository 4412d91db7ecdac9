from __future__ import annotations

import json
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from codex_exec.config import CodexConfig
from codex_exec.drain import DIAGNOSTIC_TRUNCATED_MARKER
from codex_exec.errors import CodexLaunchError
from codex_exec.finalize import MISSING_AGENT_MESSAGES_WARNING
from codex_exec.models import ExecutionRequest
from codex_exec.runner import _abandon, _spawn, run_codex

MakeCodex = Callable[[list[str]], str]


def _emit(payload: dict[str, object]) -> str:
    return f"print({json.dumps(json.dumps(payload))}, flush=True)"


def _agent(text: str) -> dict[str, object]:
    return {"type": "item.completed", "item": {"type": "agent_message", "text": text}}


_RECORD_ARGV = [
    "if os.environ.get('CODEX_ARGS_LOG'):",
    "    with open(os.environ['CODEX_ARGS_LOG'], 'w', encoding='utf-8') as f:",
    "        json.dump(sys.argv[1:], f)",
]


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def args_log(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    path = tmp_path / "argv.json"
    monkeypatch.setenv("CODEX_ARGS_LOG", str(path))
    return path


def _use(monkeypatch: pytest.MonkeyPatch, binary: str) -> None:
    monkeypatch.setenv("CODEX_BIN", binary)


def test_fresh_session_collects_session_and_agent_text(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
    args_log: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                *_RECORD_ARGV,
                _emit({"type": "thread.started", "thread_id": "S1"}),
                _emit(_agent("A")),
                _emit(_agent("B")),
                _emit({"type": "turn.completed"}),
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="say hi", working_dir=work_dir))

    assert result.success is True
    assert result.session_id == "S1"
    assert result.agent_messages == "A\nB"
    assert result.error is None
    assert result.warnings is None
    assert result.exit_code == 0
    assert len(result.all_messages) == 4
    assert json.loads(args_log.read_text(encoding="utf-8")) == [
        "exec",
        "--cd",
        str(work_dir),
        "--json",
        "--",
        "say hi",
    ]


def test_resume_passes_session_before_prompt(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
    args_log: Path,
) -> None:
    image = work_dir / "shot.png"
    image.write_bytes(b"\x89PNG")
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                *_RECORD_ARGV,
                _emit({"type": "thread.started", "thread_id": "S1"}),
                _emit(_agent("resumed")),
            ]
        ),
    )

    result = run_codex(
        ExecutionRequest(
            prompt="continue",
            working_dir=work_dir,
            session_id="S1",
            additional_args=("--model", "o4-mini"),
            image_paths=(image,),
        )
    )

    assert result.success is True
    assert json.loads(args_log.read_text(encoding="utf-8")) == [
        "exec",
        "--cd",
        str(work_dir),
        "--json",
        "--model",
        "o4-mini",
        "--image",
        str(image),
        "resume",
        "S1",
        "--",
        "continue",
    ]


def test_parse_error_kills_child_and_keeps_first_error(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "print('this is not json', flush=True)",
                "sys.stderr.write('still running\\n')",
                "sys.stderr.flush()",
                "time.sleep(30)",
            ]
        ),
    )

    started = time.monotonic()
    result = run_codex(
        ExecutionRequest(prompt="p", working_dir=work_dir, timeout_secs=60)
    )

    assert time.monotonic() - started < 20
    assert result.success is False
    assert result.timed_out is False
    assert result.error is not None
    assert result.error.startswith("JSON parse error: ")
    assert "Line: this is not json" in result.error
    assert "exit code" not in result.error
    assert result.exit_code != 0
    assert result.session_id == "S1"


def test_nonzero_exit_reports_stderr(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "sys.stderr.write('boom\\n')",
                "sys.exit(2)",
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir))

    assert result.success is False
    assert result.exit_code == 2
    assert result.error == "codex command failed with exit code: 2\nStderr: boom"


def test_error_event_then_nonzero_exit_keeps_codex_error(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                _emit({"type": "turn.failed", "error": {"message": "quota exceeded"}}),
                "sys.exit(1)",
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir))

    assert result.success is False
    assert result.error == "codex error: quota exceeded"


def test_zero_exit_with_stderr_and_no_agent_text_only_warns(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "sys.stderr.write('note: using cached model list\\n')",
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir))

    assert result.success is True
    assert result.error is None
    assert result.warnings == (
        f"note: using cached model list\n{MISSING_AGENT_MESSAGES_WARNING}"
    )


def test_missing_session_id_fails(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(monkeypatch, make_dummy_codex([_emit(_agent("orphan"))]))

    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir))

    assert result.success is False
    assert result.error == "Failed to get SESSION_ID from the codex session."
    assert result.agent_messages == "orphan"


def test_heavy_output_on_both_streams_does_not_stall(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                "line = 'e' * 1023 + '\\n'",
                "for _ in range(2048):",
                "    sys.stderr.write(line)",
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "for i in range(3000):",
                "    print(json.dumps({'type': 'item.completed', "
                "'item': {'type': 'agent_message', 'text': str(i)}}))",
                "sys.stdout.flush()",
            ]
        ),
    )

    result = run_codex(
        ExecutionRequest(prompt="p", working_dir=work_dir, timeout_secs=60),
        CodexConfig(all_messages_limit=100),
    )

    assert result.success is True
    assert result.timed_out is False
    assert result.agent_messages.endswith("\n2999")
    assert len(result.all_messages) == 100
    assert result.all_messages_truncated is True
    assert result.warnings is not None
    assert DIAGNOSTIC_TRUNCATED_MARKER in result.warnings


def test_timeout_returns_synthetic_result_with_instruction_warnings(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    (work_dir / "AGENTS.md").write_bytes(b"rules \xff")
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "time.sleep(30)",
            ]
        ),
    )

    started = time.monotonic()
    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir, timeout_secs=1))

    assert time.monotonic() - started < 15
    assert result.timed_out is True
    assert result.success is False
    assert result.error == "Codex execution timed out after 1 seconds"
    assert result.warnings == "AGENTS.md is not valid UTF-8; invalid bytes were replaced."
    assert result.session_id == ""


def test_agents_file_is_prepended_to_prompt(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
    args_log: Path,
) -> None:
    (work_dir / "AGENTS.md").write_text("Always run tests.", encoding="utf-8")
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                *_RECORD_ARGV,
                _emit({"type": "thread.started", "thread_id": "S1"}),
                _emit(_agent("ok")),
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="do it", working_dir=work_dir))

    assert result.success is True
    argv = json.loads(args_log.read_text(encoding="utf-8"))
    assert argv[-1] == "<system_prompt>\nAlways run tests.\n</system_prompt>\n\ndo it"


def test_launch_failure_raises(monkeypatch: pytest.MonkeyPatch, work_dir: Path) -> None:
    _use(monkeypatch, str(work_dir / "no-such-codex"))

    with pytest.raises(CodexLaunchError) as excinfo:
        run_codex(ExecutionRequest(prompt="secret prompt", working_dir=work_dir))

    message = str(excinfo.value)
    assert "no-such-codex" in message
    assert "CODEX_BIN" in message
    assert "secret prompt" not in message


def test_deeply_nested_line_fails_the_run(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                _emit(_agent("before")),
                "print('[' * 100000, flush=True)",
            ]
        ),
    )

    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir, timeout_secs=60))

    assert result.success is False
    assert result.timed_out is False
    assert result.error is not None
    assert result.error.startswith("JSON parse error: ")
    assert result.agent_messages == "before"


def test_undecodable_value_followed_by_heavy_output_finishes(
    monkeypatch: pytest.MonkeyPatch,
    make_dummy_codex: MakeCodex,
    work_dir: Path,
) -> None:
    _use(
        monkeypatch,
        make_dummy_codex(
            [
                _emit({"type": "thread.started", "thread_id": "S1"}),
                "print('{\"n\": ' + '1' * 5000 + '}', flush=True)",
                "line = json.dumps({'type': 'item.completed', "
                "'item': {'type': 'agent_message', 'text': 'x' * 100}})",
                "for _ in range(20000):",
                "    print(line)",
            ]
        ),
    )

    started = time.monotonic()
    result = run_codex(ExecutionRequest(prompt="p", working_dir=work_dir, timeout_secs=30))

    assert time.monotonic() - started < 20
    assert result.timed_out is False
    assert result.success is False
    assert result.error is not None
    assert result.error.startswith("JSON parse error: ")
    assert "Failed to read codex stdout" not in result.error
    assert result.session_id == "S1"


def test_abandoned_run_closes_pipes_after_reaping() -> None:
    proc, stdout, stderr = _spawn([sys.executable, "-c", "import time; time.sleep(30)"])
    drains = [
        threading.Thread(target=stdout.read, daemon=True),
        threading.Thread(target=stderr.read, daemon=True),
    ]
    for drain in drains:
        drain.start()

    result = _abandon(proc, drains, timeout_secs=1, advisories=["note"])

    assert result.timed_out is True
    assert result.warnings == "note"
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline and not (stdout.closed and stderr.closed):
        time.sleep(0.05)
    assert proc.returncode is not None
    assert stdout.closed
    assert stderr.closed
