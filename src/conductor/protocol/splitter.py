"""Incremental line splitting for chunked subprocess output."""

from __future__ import annotations

import codecs
from typing import List

__all__ = ["LineSplitter"]


class LineSplitter:
    """Buffer partial lines across arbitrary chunk boundaries.

    ``feed`` accepts ``str`` or ``bytes``; bytes are decoded incrementally so
    a multi-byte character split across two chunks is reassembled intact.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._fragment = ""

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._fragment

    def feed(self, chunk: str | bytes) -> List[str]:
        """Return every line completed by ``chunk`` (without terminators)."""
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        parts = (self._fragment + text).split("\n")
        self._fragment = parts.pop()
        return [part[:-1] if part.endswith("\r") else part for part in parts]

    def flush(self) -> List[str]:
        """Return the trailing unterminated line, if any, and reset."""
        tail = self._decoder.decode(b"", final=True)
        remainder = self._fragment + tail
        self._fragment = ""
        if remainder.endswith("\r"):
            remainder = remainder[:-1]
        return [remainder] if remainder else []
