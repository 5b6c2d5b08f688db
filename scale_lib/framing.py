"""Incremental delimiter-based line reassembly."""

import logging
from typing import Iterable, Iterator, List

logger = logging.getLogger(__name__)


class LineFramer:
    """Reassembles lines from an arbitrarily chunked text stream.

    Holds at most one incomplete line between calls. Empty segments between
    consecutive delimiters are emitted as empty strings; callers decide whether
    to drop them (some indicators send blank keep-alive frames).

    One instance per channel open. Not restartable.
    """

    def __init__(self, delimiter: str = "\r") -> None:
        """Initialize framer.

        Args:
            delimiter: Line terminator to split on (e.g. "\\r", "\\r\\n")
        """
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")

        self._delimiter = delimiter
        self._buffer = ""

    @property
    def delimiter(self) -> str:
        return self._delimiter

    @property
    def pending(self) -> str:
        """Partial line accumulated so far."""
        return self._buffer

    def feed(self, chunk: str) -> List[str]:
        """Append a chunk and return every line it completed.

        Args:
            chunk: Decoded text, no alignment to line boundaries required

        Returns:
            Complete lines in arrival order, delimiter stripped
        """
        self._buffer += chunk
        parts = self._buffer.split(self._delimiter)
        self._buffer = parts.pop()
        return parts

    def flush(self) -> List[str]:
        """Emit the partial line (if any) at end of stream and clear it."""
        if not self._buffer:
            return []
        tail = self._buffer
        self._buffer = ""
        logger.debug(f"Flushed partial line: {tail!r}")
        return [tail]

    def frame(self, chunks: Iterable[str]) -> Iterator[str]:
        """Lazily turn a chunk stream into a line stream.

        The trailing partial line is emitted once ``chunks`` is exhausted.

        Args:
            chunks: Ordered text chunks

        Yields:
            Complete lines, then the flushed tail
        """
        for chunk in chunks:
            yield from self.feed(chunk)
        yield from self.flush()
