from __future__ import annotations

from collections.abc import Callable
from typing import BinaryIO

import structlog

from codex_exec.accumulator import EventAccumulator
from codex_exec.line_reader import iter_bounded_lines

logger = structlog.get_logger(__name__)

MAX_STDOUT_LINE_BYTES = 10 * 1024 * 1024
MAX_DIAGNOSTIC_BYTES = 1024 * 1024
DIAGNOSTIC_TRUNCATED_MARKER = "[... stderr truncated due to size limit ...]"


class DiagnosticBuffer:
    """Size-capped, newline-joined capture of the diagnostic (stderr) stream."""

    def __init__(self, limit: int = MAX_DIAGNOSTIC_BYTES) -> None:
        self.limit = limit
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append_line(self, line: str) -> None:
        if self.truncated:
            return
        separator = "\n" if self._parts else ""
        addition = separator + line
        addition_bytes = len(addition.encode("utf-8", errors="replace"))
        if self._size + addition_bytes > self.limit:
            self.mark_truncated()
            return
        self._parts.append(addition)
        self._size += addition_bytes

    def mark_truncated(self) -> None:
        if self.truncated:
            return
        self.truncated = True
        self._parts.append(("\n" if self._parts else "") + DIAGNOSTIC_TRUNCATED_MARKER)

    def getvalue(self) -> str:
        return "".join(self._parts)


def drain_events(
    stream: BinaryIO,
    accumulator: EventAccumulator,
    *,
    on_fatal: Callable[[], None],
    max_line_bytes: int = MAX_STDOUT_LINE_BYTES,
) -> None:
    """
    Read Codex stdout to EOF, feeding each NDJSON line to `accumulator`.

    Once a line is too long or unparseable the accumulator latches into drain-only mode and
    `on_fatal` is called once; reading continues so the child never blocks on a full pipe.
    """

    lines = iter_bounded_lines(stream, max_line_bytes)
    while True:
        # Only reader errors end the loop; interpretation happens outside this guard.
        try:
            line = next(lines, None)
        except (OSError, ValueError) as e:
            logger.warning("failed to read codex stdout", error=str(e))
            accumulator.result.record_error(f"Failed to read codex stdout: {e}")
            return
        if line is None:
            return

        if accumulator.drain_only:
            continue
        if line.truncated:
            accumulator.record_line_too_long(max_line_bytes)
        elif not line.text.strip():
            continue
        else:
            accumulator.feed_line(line.text, nbytes=line.nbytes)
        if accumulator.drain_only:
            on_fatal()


def drain_diagnostics(
    stream: BinaryIO,
    buffer: DiagnosticBuffer,
    *,
    max_line_bytes: int = MAX_DIAGNOSTIC_BYTES,
) -> None:
    try:
        for line in iter_bounded_lines(stream, max_line_bytes):
            if line.truncated:
                buffer.mark_truncated()
                continue
            buffer.append_line(line.text)
    except (OSError, ValueError) as e:
        # Keep whatever was captured; stderr is context, not a result source.
        logger.warning("failed to read codex stderr", error=str(e))
