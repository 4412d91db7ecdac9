from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

_DISCARD_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class BoundedLine:
    text: str
    nbytes: int
    truncated: bool = False

    @property
    def eof(self) -> bool:
        return self.nbytes == 0 and not self.truncated


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _discard_through_newline(stream: BinaryIO) -> int:
    consumed = 0
    while True:
        piece = stream.readline(_DISCARD_CHUNK_BYTES)
        consumed += len(piece)
        if not piece or piece.endswith(b"\n"):
            return consumed


def read_bounded_line(stream: BinaryIO, max_len: int) -> BoundedLine:
    """
    Read one line from `stream`, holding at most `max_len` content bytes in memory.

    Lines longer than `max_len` are consumed through their terminator and reported as
    truncated with empty text, so the following call starts on the next line. A zero-byte,
    non-truncated result means end of stream.
    """

    if max_len < 1:
        raise ValueError(f"max_len must be positive, got {max_len}")

    chunk = stream.readline(max_len + 1)
    if not chunk:
        return BoundedLine(text="", nbytes=0)

    consumed = len(chunk)
    if chunk.endswith(b"\n"):
        content = chunk[:-1]
        if content.endswith(b"\r"):
            content = content[:-1]
        return BoundedLine(text=_decode(content), nbytes=consumed)

    if len(chunk) <= max_len:
        # Final line without a terminator.
        return BoundedLine(text=_decode(chunk), nbytes=consumed)

    if chunk.endswith(b"\r"):
        # `max_len` bytes followed by a CRLF split across the read boundary.
        lookahead = stream.readline(1)
        consumed += len(lookahead)
        if lookahead == b"\n":
            return BoundedLine(text=_decode(chunk[:-1]), nbytes=consumed)
        if not lookahead:
            return BoundedLine(text="", nbytes=consumed, truncated=True)

    consumed += _discard_through_newline(stream)
    return BoundedLine(text="", nbytes=consumed, truncated=True)


def iter_bounded_lines(stream: BinaryIO, max_len: int) -> Iterator[BoundedLine]:
    while True:
        line = read_bounded_line(stream, max_len)
        if line.eof:
            return
        yield line
