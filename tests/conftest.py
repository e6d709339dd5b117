import asyncio
import json
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pytest

from config import TimingConfig, VoiceEngineConfig

from apps.pipeline.backend import ChatBackend
from apps.pipeline.camera import Frame, FrameSource
from apps.pipeline.capture import RecognitionEvent, RecognitionEventKind, RecognitionHandle, Recognizer
from apps.pipeline.errors import StreamTransportError, SynthesisError
from apps.pipeline.speech_queue import Synthesizer


FAST_TIMING = TimingConfig(
    settle_delay_sec=0.01,
    speech_pause_sec=0.03,
    countdown_sec=0.08,
    countdown_tick_sec=0.01,
    proactive_interval_sec=3600.0,
)


def fast_config(**timing_overrides) -> VoiceEngineConfig:
    timing = FAST_TIMING.model_copy(update=timing_overrides)
    return VoiceEngineConfig(timing=timing)


async def wait_for(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def sse(*deltas: str, done: bool = True) -> bytes:
    """Relay-style event stream for the given deltas."""
    out = "".join(
        f"data: {json.dumps({'choices': [{'delta': {'content': d}}]}, ensure_ascii=False)}\n\n" for d in deltas
    )
    if done:
        out += "data: [DONE]\n\n"
    return out.encode("utf-8")


# ---------------------------------------------------------------------------
# Speech synthesis
# ---------------------------------------------------------------------------

class FakeSynthesizer(Synthesizer):
    def __init__(self, delay: float = 0.0, fail_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.spoken: list[str] = []
        self.finished: list[str] = []
        self.cancelled = 0
        self.chimes = 0

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        await asyncio.sleep(self.delay)
        if text in self.fail_on:
            raise SynthesisError(f"cannot say {text!r}")
        self.finished.append(text)

    def cancel_all(self) -> None:
        self.cancelled += 1

    def chime(self) -> None:
        self.chimes += 1


# ---------------------------------------------------------------------------
# Speech recognition
# ---------------------------------------------------------------------------

class FakeHandle(RecognitionHandle):
    def __init__(self, language: str):
        self.language = language
        self.aborted = False
        self._events: asyncio.Queue = asyncio.Queue()

    async def events(self):
        while True:
            event = await self._events.get()
            yield event
            if event.kind is RecognitionEventKind.END:
                return

    def abort(self) -> None:
        self.aborted = True

    def say(self, text: str, final: bool = True) -> None:
        self._events.put_nowait(RecognitionEvent.result(text, is_final=final))

    def fail(self, code: str, detail: str = "") -> None:
        self._events.put_nowait(RecognitionEvent.failure(code, detail))

    def end(self) -> None:
        self._events.put_nowait(RecognitionEvent.end())


class FakeRecognizer(Recognizer):
    def __init__(self, supported: bool = True, fail_begin: bool = False):
        self._supported = supported
        self.fail_begin = fail_begin
        self.handles: list[FakeHandle] = []

    @property
    def supported(self) -> bool:
        return self._supported

    def begin(self, language: str) -> FakeHandle:
        if self.fail_begin:
            raise RuntimeError("microphone busy")
        handle = FakeHandle(language)
        self.handles.append(handle)
        return handle

    @property
    def current(self) -> FakeHandle:
        return self.handles[-1]


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

@dataclass
class FakeReply:
    chunks: list = field(default_factory=lambda: [sse("Okay.")])
    delay: float = 0.0
    fail_before: bool = False
    fail_after: Optional[int] = None


class FakeBackend(ChatBackend):
    def __init__(self):
        self.replies: deque[FakeReply] = deque()
        self.requests: list[tuple[list, Optional[str]]] = []

    def reply(self, *chunks, **kwargs) -> FakeReply:
        reply = FakeReply(chunks=list(chunks), **kwargs) if chunks else FakeReply(**kwargs)
        self.replies.append(reply)
        return reply

    @asynccontextmanager
    async def stream(self, messages, image_base64=None):
        self.requests.append((list(messages), image_base64))
        reply = self.replies.popleft() if self.replies else FakeReply()
        await asyncio.sleep(0)
        if reply.fail_before:
            raise StreamTransportError("Relay returned 503: unavailable", status_code=503)
        yield self._iter(reply)

    async def _iter(self, reply: FakeReply):
        for i, chunk in enumerate(reply.chunks):
            if reply.fail_after is not None and i >= reply.fail_after:
                raise StreamTransportError("Relay stream broke: connection reset")
            await asyncio.sleep(reply.delay)
            yield chunk


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------

def make_frame(value: int = 0, encoded: str = "ZmFrZQ==") -> Frame:
    image = np.zeros((48, 64, 3), dtype=np.uint8)
    image[:, : 32 + value] = 200
    return Frame(image=image, encoded=encoded)


class FakeFrameSource(FrameSource):
    def __init__(self, frames=None):
        self.frames = deque(frames or [])
        self.last: Optional[Frame] = None
        self.calls = 0

    def capture_frame(self) -> Optional[Frame]:
        self.calls += 1
        if self.frames:
            self.last = self.frames.popleft()
        return self.last


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def synth():
    return FakeSynthesizer()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def frames():
    return FakeFrameSource([make_frame(0, "Zmlyc3Q=")])
