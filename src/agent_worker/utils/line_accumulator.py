"""Incremental newline-delimited line assembly for streamed subprocess output."""

from typing import Iterator, List


class LineAccumulator:
    """Collects raw byte chunks and yields only complete lines.

    A trailing partial line stays buffered until a later chunk supplies its
    newline, or until ``flush()`` is called at end of stream.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[str]:
        """Add a chunk and return every line it completed (without the newline)."""
        return list(self._iter_feed(chunk))

    def _iter_feed(self, chunk: bytes) -> Iterator[str]:
        self._buffer += chunk
        while b"\n" in self._buffer:
            line_bytes, self._buffer = self._buffer.split(b"\n", 1)
            yield self._decode(line_bytes)

    def flush(self) -> List[str]:
        """Return the buffered remainder as a final line, if any."""
        if not self._buffer:
            return []
        remainder, self._buffer = self._buffer, b""
        return [self._decode(remainder)]

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet terminated by a newline."""
        return self._buffer

    def _decode(self, data: bytes) -> str:
        # Tolerate CRLF from tools running under pseudo-terminals
        return data.decode(self.encoding, errors="replace").rstrip("\r")
