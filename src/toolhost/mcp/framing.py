"""
Newline-delimited JSON framing.

``MessageFramer`` turns arbitrarily chunked text into one decoded JSON value
per newline-terminated line. Lines that are not JSON are dropped with a DEBUG
log: many tool providers print diagnostics on the same stream. A line longer
than ``max_line_length`` is dropped as well, without being buffered whole.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Callable, List

from loguru import logger

Listener = Callable[[Any], None]

MAX_LINE_LENGTH = 16 * 1024 * 1024


class MessageFramer:
    """Incremental line splitter + JSON decoder."""

    def __init__(self, source: str = "", max_line_length: int = MAX_LINE_LENGTH) -> None:
        self._source = source
        self._max_line_length = max_line_length
        # Fragments of the current unterminated line; joined once its newline arrives.
        self._parts: List[str] = []
        self._pending_length = 0
        self._skipping = False
        self._listeners: List[Listener] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.discarded = 0

    @property
    def buffered(self) -> str:
        """Incomplete trailing fragment waiting for its newline."""
        return "".join(self._parts)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def feed_bytes(self, chunk: bytes) -> List[Any]:
        """Decode a raw chunk from a pipe; multi-byte characters may straddle chunks."""
        return self.feed(self._decoder.decode(chunk))

    def feed(self, chunk: str) -> List[Any]:
        """
        Append ``chunk`` and emit every complete line.

        Returns the values decoded by this call, in arrival order. Listeners
        are invoked synchronously for each value as it is decoded.
        """
        decoded: List[Any] = []
        start = 0

        while True:
            idx = chunk.find("\n", start)
            if idx < 0:
                self._hold(chunk[start:])
                break
            piece = chunk[start:idx]
            start = idx + 1

            if self._skipping:
                # Tail of an oversized line, already counted.
                self._skipping = False
                continue
            if self._parts:
                self._parts.append(piece)
                line = "".join(self._parts)
                self._parts = []
                self._pending_length = 0
            else:
                line = piece

            if len(line) > self._max_line_length:
                self._drop_oversized(len(line))
                continue
            self._parse(line, decoded)

        return decoded

    def _hold(self, fragment: str) -> None:
        if not fragment or self._skipping:
            return
        self._parts.append(fragment)
        self._pending_length += len(fragment)
        if self._pending_length > self._max_line_length:
            self._drop_oversized(self._pending_length)
            self._parts = []
            self._pending_length = 0
            self._skipping = True

    def _drop_oversized(self, length: int) -> None:
        self.discarded += 1
        logger.warning(
            f"[{self._source}] discarding line longer than {self._max_line_length} characters ({length}+)"
        )

    def _parse(self, line: str, decoded: List[Any]) -> None:
        if not line.strip():
            return
        try:
            value = json.loads(line)
        except (ValueError, RecursionError) as e:
            # RecursionError: nesting deeper than the interpreter's recursion limit.
            self.discarded += 1
            logger.debug(f"[{self._source}] discarding non-JSON line ({type(e).__name__}): {line[:200]!r}")
            return

        decoded.append(value)
        for listener in list(self._listeners):
            listener(value)
