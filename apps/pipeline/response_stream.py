"""
response_stream.py — streamed reply → spoken sentences
======================================================
The relay answers with server-sent event frames:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo. "}}]}
    data: [DONE]

Deltas are appended to the reply text and to a pending buffer.  Every time
the buffer holds a sentence terminator followed by whitespace, the complete
sentences are handed to on_segment straight away, so speech starts while
the reply is still arriving.  The unterminated tail is flushed once more
when the stream ends.

A reply made of nothing but the silence sentinel produces no segments.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterable, Callable, Optional, Union

from apps.pipeline.errors import StreamMalformedFrame

log = logging.getLogger("jia.response_stream")

SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+')
DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


@dataclass
class StreamResult:
    full_text: str
    segment_count: int
    done: bool

    @property
    def reply(self) -> str:
        return self.full_text.strip()


def parse_frame(line: str) -> Optional[str]:
    """Return the text delta carried by one SSE line, or None.

    Raises StreamMalformedFrame for a data line whose payload is not JSON.
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if not payload or payload == DONE_MARKER:
        return None
    try:
        frame = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamMalformedFrame(payload[:80]) from exc
    try:
        content = frame["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content if isinstance(content, str) and content else None


def split_sentences(pending: str) -> tuple[list[str], str]:
    """Split *pending* into complete sentences and the unterminated remainder."""
    parts = SENTENCE_SPLIT_RE.split(pending)
    return parts[:-1], parts[-1]


class ResponseStreamConsumer:
    def __init__(
        self,
        *,
        sentinel: str,
        on_segment: Callable[[str], None],
        on_delta: Optional[Callable[[str], None]] = None,
    ):
        self._sentinel = sentinel
        self._on_segment = on_segment
        self._on_delta = on_delta
        self.full_text = ""
        self.segment_count = 0
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    async def consume(self, chunks: AsyncIterable[Union[bytes, str]]) -> StreamResult:
        """Read the stream to its end.

        Transport errors raised by *chunks* propagate unchanged; the caller
        decides what to do with the partial reply.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        line_buf = ""
        done = False

        async for chunk in chunks:
            text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            line_buf += text
            *lines, line_buf = line_buf.split("\n")
            for line in lines:
                if self._handle_line(line):
                    done = True

        line_buf += decoder.decode(b"", final=True)
        if line_buf and self._handle_line(line_buf):
            done = True

        self._flush_tail()
        log.debug(
            "event=stream_complete chars=%d segments=%d done=%s",
            len(self.full_text), self.segment_count, done,
        )
        return StreamResult(self.full_text, self.segment_count, done)

    def _handle_line(self, line: str) -> bool:
        """Feed one line; True when it is the terminator frame."""
        stripped = line.strip()
        if stripped.startswith(DATA_PREFIX) and stripped[len(DATA_PREFIX):].strip() == DONE_MARKER:
            return True
        try:
            delta = parse_frame(line)
        except StreamMalformedFrame as exc:
            log.debug("event=stream_frame_skipped payload=%s", exc)
            return False
        if delta is not None:
            self._feed(delta)
        return False

    def _feed(self, delta: str) -> None:
        self.full_text += delta
        self._pending += delta
        if self._on_delta is not None:
            self._on_delta(self.full_text)

        sentences, self._pending = split_sentences(self._pending)
        for sentence in sentences:
            self._emit(sentence)

    def _flush_tail(self) -> None:
        tail, self._pending = self._pending, ""
        self._emit(tail)

    def _emit(self, segment: str) -> None:
        segment = segment.strip()
        if not segment or segment == self._sentinel:
            return
        self.segment_count += 1
        log.debug("event=segment_ready n=%d text=%.60s", self.segment_count, segment)
        self._on_segment(segment)
