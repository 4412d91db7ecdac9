from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import structlog

from codex_exec.models import ExecutionResult

logger = structlog.get_logger(__name__)

MAX_AGENT_MESSAGES_BYTES = 10 * 1024 * 1024
MAX_ALL_MESSAGES_BYTES = 50 * 1024 * 1024
DEFAULT_ALL_MESSAGES_LIMIT = 10_000
MAX_ALL_MESSAGES_LIMIT = 50_000
AGENT_MESSAGES_TRUNCATED_MARKER = "[... Agent messages truncated due to size limit ...]"

_PARSE_ERROR_LINE_PREVIEW_CHARS = 512


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8", errors="replace"))


def _line_preview(line: str) -> str:
    if len(line) <= _PARSE_ERROR_LINE_PREVIEW_CHARS:
        return line
    return line[:_PARSE_ERROR_LINE_PREVIEW_CHARS] + "..."


def _error_message(payload: dict[str, Any]) -> str | None:
    error_obj = payload.get("error")
    if isinstance(error_obj, dict):
        msg = error_obj.get("message")
        if isinstance(msg, str):
            return msg
    msg = payload.get("message")
    if isinstance(msg, str):
        return msg
    return None


@dataclass
class StreamState:
    drain_only: bool = False
    agent_messages_bytes: int = 0
    all_messages_bytes: int = 0


class EventAccumulator:
    """Folds Codex NDJSON events from stdout into an `ExecutionResult`, in emission order."""

    def __init__(
        self,
        result: ExecutionResult,
        *,
        message_limit: int = DEFAULT_ALL_MESSAGES_LIMIT,
    ) -> None:
        self.result = result
        self.message_limit = max(0, min(message_limit, MAX_ALL_MESSAGES_LIMIT))
        self.state = StreamState()

    @property
    def drain_only(self) -> bool:
        return self.state.drain_only

    def feed_line(self, line: str, *, nbytes: int | None = None) -> None:
        if self.state.drain_only:
            return
        try:
            payload = json.loads(line)
        except (ValueError, RecursionError) as e:
            # Decoder limits (nesting depth, integer digits) count as unparseable output.
            self.record_parse_error(e, line)
            return
        self.handle_event(payload, nbytes=nbytes if nbytes is not None else _utf8_len(line))

    def handle_event(self, payload: Any, *, nbytes: int) -> None:
        if not isinstance(payload, dict):
            return

        self._keep_event(payload, nbytes)

        thread_id = payload.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            if self.result.session_id and self.result.session_id != thread_id:
                logger.debug(
                    "codex session id changed",
                    previous=self.result.session_id,
                    current=thread_id,
                )
            self.result.session_id = thread_id

        item = payload.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str):
                self._append_agent_text(text)

        line_type = payload.get("type")
        if isinstance(line_type, str) and ("fail" in line_type or "error" in line_type):
            msg = _error_message(payload)
            if msg is not None:
                self.result.record_error(f"codex error: {msg}")
            else:
                self.result.record_error(f"codex reported {line_type} event")

    def record_parse_error(self, error: ValueError | RecursionError, line: str) -> None:
        self.result.record_error(f"JSON parse error: {error}. Line: {_line_preview(line)}")
        self._enter_drain_only(reason="parse_error")

    def record_line_too_long(self, max_len: int) -> None:
        self.result.record_error(
            f"codex output line exceeded {max_len} bytes; "
            "remaining output was drained without parsing."
        )
        self._enter_drain_only(reason="line_too_long")

    def _enter_drain_only(self, *, reason: str) -> None:
        if self.state.drain_only:
            return
        self.state.drain_only = True
        logger.warning("codex stdout switched to drain-only mode", reason=reason)

    def _keep_event(self, payload: dict[str, Any], nbytes: int) -> None:
        if self.result.all_messages_truncated:
            return
        within_count = len(self.result.all_messages) < self.message_limit
        within_size = self.state.all_messages_bytes + nbytes <= MAX_ALL_MESSAGES_BYTES
        if within_count and within_size:
            self.result.all_messages.append(payload)
            self.state.all_messages_bytes += nbytes
            return
        self.result.all_messages_truncated = True
        logger.info(
            "codex event log truncated",
            kept=len(self.result.all_messages),
            kept_bytes=self.state.all_messages_bytes,
        )

    def _append_agent_text(self, text: str) -> None:
        if self.result.agent_messages_truncated:
            return

        separator = "\n" if self.result.agent_messages and text else ""
        addition = separator + text
        addition_bytes = _utf8_len(addition)
        if self.state.agent_messages_bytes + addition_bytes > MAX_AGENT_MESSAGES_BYTES:
            self.result.agent_messages += AGENT_MESSAGES_TRUNCATED_MARKER
            self.state.agent_messages_bytes += _utf8_len(AGENT_MESSAGES_TRUNCATED_MARKER)
            self.result.agent_messages_truncated = True
            return

        self.result.agent_messages += addition
        self.state.agent_messages_bytes += addition_bytes
