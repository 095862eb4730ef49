"""
Message splitting for transports with a per-message length cap.

Pure functions, no I/O. Lines are packed greedily into chunks; a line that
cannot fit on its own is hard-split into fixed-size pieces that leave
`reserve` characters of headroom for transport framing.

Splitting is lossless: join_chunks(split_message(body, n)) == body. Chunks are
plain strings; each one remembers whether it starts a new line or continues a
hard-split line, so the boundary can be restored exactly.
"""
from __future__ import annotations

from typing import Optional

DEFAULT_SPLIT_RESERVE = 50


class Chunk(str):
    """A str that knows how it attaches to the chunk before it."""

    continues_line: bool = False

    def __new__(cls, text: str, continues_line: bool = False):
        obj = super().__new__(cls, text)
        obj.continues_line = continues_line
        return obj


def split_message(
    body: str, max_length: int, reserve: int = DEFAULT_SPLIT_RESERVE,
) -> list[Chunk]:
    if max_length < 1:
        raise ValueError("max_length must be >= 1")

    if len(body) <= max_length:
        return [Chunk(body)]

    piece_size = max(1, max_length - max(0, reserve))
    chunks: list[Chunk] = []
    current: Optional[str] = None

    for line in body.split("\n"):
        if len(line) > max_length:
            if current is not None:
                chunks.append(Chunk(current))
                current = None
            for i in range(0, len(line), piece_size):
                chunks.append(Chunk(line[i:i + piece_size], continues_line=i > 0))
            continue

        if current is None:
            current = line
        elif len(current) + 1 + len(line) <= max_length:
            current = f"{current}\n{line}"
        else:
            chunks.append(Chunk(current))
            current = line

    if current is not None:
        chunks.append(Chunk(current))
    return chunks


def join_chunks(chunks: list[str]) -> str:
    """Inverse of split_message: newlines restored only at line boundaries."""
    parts: list[str] = []
    for i, chunk in enumerate(chunks):
        if i > 0 and not getattr(chunk, "continues_line", False):
            parts.append("\n")
        parts.append(chunk)
    return "".join(parts)
