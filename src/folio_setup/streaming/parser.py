"""Incremental decoder for ``data: {...}`` event streams.

The setup API answers long-running operations with newline-delimited frames::

    data: {"type": "info", "data": "Creating project..."}\n
    \n

Transport chunks arrive at arbitrary byte offsets, so the parser keeps two
pieces of state across chunks:

1. an incremental UTF-8 decoder, so a multi-byte character split between
   two chunks is reassembled before it reaches the line buffer;
2. a text buffer holding the trailing, possibly partial, line.

Lines that do not start with ``data: `` are ignored. Lines that do but fail
to decode into a known event are dropped and counted in ``dropped_lines``;
transport framing occasionally truncates non-terminal chunks and one bad
frame must not kill the run.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterator

from ..models import StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = 'data: '


class StreamEventParser:
    """Chunk-boundary-invariant parser for one response stream."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''
        self._flushed = False
        self.dropped_lines = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume one chunk and return the events it completed."""
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        *lines, self._buffer = self._buffer.split('\n')

        events: list[StreamEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        """Drain the decoder and the trailing buffer. Only the first call counts."""
        if self._flushed:
            return []
        self._flushed = True

        self._buffer += self._decoder.decode(b'', final=True)
        remainder, self._buffer = self._buffer, ''

        events: list[StreamEvent] = []
        for line in remainder.split('\n'):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ''
        self._flushed = False
        self.dropped_lines = 0

    def _parse_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None

        try:
            payload = json.loads(line[len(DATA_PREFIX):])
        except ValueError:
            self._drop(line)
            return None

        event = StreamEvent.from_payload(payload)
        if event is None:
            self._drop(line)
        return event

    def _drop(self, line: str) -> None:
        self.dropped_lines += 1
        logger.debug(
            "Dropped malformed stream line (%d so far): %.80s",
            self.dropped_lines,
            line,
        )


async def aiter_events(
    chunks: AsyncIterator[bytes],
    parser: StreamEventParser | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield events from an async byte iterator, flushing once at the end."""
    parser = parser or StreamEventParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event
