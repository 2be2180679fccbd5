from __future__ import annotations

import codecs
import json
import logging
import re
from typing import AsyncIterable, AsyncIterator


logger = logging.getLogger(__name__)

_BLOCK_SEPARATOR = re.compile(r"\r?\n\r?\n")
_LINE_SEPARATOR = re.compile(r"\r?\n")
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class EventStreamDecoder:
    """Incremental decoder for ``data:``-framed server-sent event streams.

    Bytes are fed in delivery order. Complete blocks (terminated by a blank
    line) are parsed immediately; a trailing partial block stays buffered until
    more bytes arrive or :meth:`flush` is called at stream end. Payloads that
    are not JSON objects are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped_frames = 0

    def feed(self, chunk: bytes) -> list[dict]:
        self._buffer += self._text_decoder.decode(chunk)
        blocks = _BLOCK_SEPARATOR.split(self._buffer)
        self._buffer = blocks.pop()

        events: list[dict] = []
        for block in blocks:
            events.extend(self._parse_block(block))
        return events

    def flush(self) -> list[dict]:
        remaining = self._buffer + self._text_decoder.decode(b"", final=True)
        self._buffer = ""
        if not remaining.strip():
            return []
        return self._parse_block(remaining)

    def _parse_block(self, block: str) -> list[dict]:
        events: list[dict] = []
        for raw_line in _LINE_SEPARATOR.split(block):
            line = raw_line.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):].strip()
            if not payload or payload == DONE_SENTINEL:
                continue

            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                self.skipped_frames += 1
                logger.debug("Skipping malformed event frame: %.80s", payload)
                continue
            if not isinstance(event, dict):
                self.skipped_frames += 1
                continue
            events.append(event)
        return events


async def decode_event_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict]:
    decoder = EventStreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event
