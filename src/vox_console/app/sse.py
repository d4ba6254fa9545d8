"""Event-stream decoding for orchestrator chat-completion streams.

Each event line looks like ``data: {"choices": [{"delta": {"content": "..."}}]}``
and the stream ends with ``data: [DONE]``. Fragments from the network may
split a line (or a multi-byte character) anywhere, so the decoder buffers
until it sees a full line.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
COMMENT_PREFIX = ":"
DONE_SENTINEL = "[DONE]"


class _Done:
    pass


_DONE = _Done()


class ChunkDecoder:
    """Incremental decoder turning raw stream fragments into content deltas."""

    def __init__(self) -> None:
        self._buffer = ""
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False

    def feed(self, fragment: str | bytes) -> list[str]:
        """Buffer one fragment and return the deltas of every complete line."""
        if self.done:
            return []
        if isinstance(fragment, bytes):
            fragment = self._text.decode(fragment)
        self._buffer += fragment

        deltas: list[str] = []
        while not self.done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            try:
                result = _decode_line(line)
            except json.JSONDecodeError:
                # Leave the line buffered and retry once more data arrives.
                break
            self._buffer = self._buffer[newline + 1 :]
            if result is _DONE:
                self.done = True
            elif result:
                deltas.append(result)
        return deltas

    def flush(self) -> list[str]:
        """Best-effort decode of whatever is still buffered at end of stream."""
        remaining = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        if self.done or not remaining.strip():
            return []

        deltas: list[str] = []
        for raw in remaining.split("\n"):
            try:
                result = _decode_line(raw)
            except json.JSONDecodeError:
                logger.debug("sse event=flush_skipped line=%r", raw[:120])
                continue
            if result is _DONE:
                self.done = True
                break
            if result:
                deltas.append(result)
        return deltas


async def iter_deltas(fragments: AsyncIterable[str | bytes]) -> AsyncIterator[str]:
    """Yield content deltas from an async fragment source until [DONE] or close."""
    decoder = ChunkDecoder()
    async for fragment in fragments:
        for delta in decoder.feed(fragment):
            yield delta
        if decoder.done:
            return
    for delta in decoder.flush():
        yield delta


def _decode_line(line: str) -> str | _Done | None:
    if line.endswith("\r"):
        line = line[:-1]
    if line.startswith(COMMENT_PREFIX) or not line.strip():
        return None
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX) :].strip()
    if payload == DONE_SENTINEL:
        return _DONE
    return _delta_content(json.loads(payload))


def _delta_content(event: Any) -> str | None:
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None
