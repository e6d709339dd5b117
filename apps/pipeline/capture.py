"""
capture.py — one recognition session at a time
===============================================
CaptureSession owns the single live recognition instance.  It merges
partial / final results into the shared Transcript, re-arms the silence
countdown on every result, and hands finished text to its listener (the
coordinator) on one of two paths:

  • countdown expiry        → listener.on_capture_complete(text)
  • platform-driven end     → listener.on_capture_ended(text)

Every session gets a fresh token from a monotonically increasing counter.
Reader and countdown callbacks compare their token against the current one
before acting, so events from a superseded session are dropped.

Tie-break: when the platform ends the session while a countdown is still
pending, the end wins and cancels the countdown.  Once either path has run
the token is retired and the other path is a stale no-op.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from config import TimingConfig

from apps.pipeline.errors import CaptureFatal, CaptureTransient, CaptureUnsupported, classify_capture_error
from apps.pipeline.silence_countdown import SilenceCountdown
from apps.pipeline.state import Transcript

log = logging.getLogger("jia.capture")


# ---------------------------------------------------------------------------
# Recognition capability (supplied by the platform)
# ---------------------------------------------------------------------------

class RecognitionEventKind(Enum):
    RESULT = "RESULT"
    ERROR = "ERROR"
    END = "END"


@dataclass(frozen=True)
class RecognitionEvent:
    kind: RecognitionEventKind
    text: str = ""
    is_final: bool = False
    error: str = ""
    detail: str = ""

    @classmethod
    def result(cls, text: str, is_final: bool = False) -> "RecognitionEvent":
        return cls(RecognitionEventKind.RESULT, text=text, is_final=is_final)

    @classmethod
    def failure(cls, code: str, detail: str = "") -> "RecognitionEvent":
        return cls(RecognitionEventKind.ERROR, error=code, detail=detail)

    @classmethod
    def end(cls) -> "RecognitionEvent":
        return cls(RecognitionEventKind.END)


class RecognitionHandle(ABC):
    """One live recognition instance."""

    @abstractmethod
    def events(self) -> AsyncIterator[RecognitionEvent]:
        """Results, errors and finally END.  Exhaustion also counts as END."""

    @abstractmethod
    def abort(self) -> None:
        """Release the instance.  Must be idempotent."""


class Recognizer(ABC):
    @property
    def supported(self) -> bool:
        return True

    @abstractmethod
    def begin(self, language: str) -> RecognitionHandle:
        ...


class CaptureListener(Protocol):
    def on_capture_activity(self, text: str) -> None: ...

    def on_capture_complete(self, text: str) -> None: ...

    def on_capture_ended(self, text: str) -> None: ...

    def on_capture_error(self, error: CaptureFatal) -> None: ...


# ---------------------------------------------------------------------------
# CaptureSession
# ---------------------------------------------------------------------------

class CaptureSession:
    def __init__(
        self,
        recognizer: Optional[Recognizer],
        transcript: Transcript,
        listener: CaptureListener,
        *,
        language: str,
        timing: TimingConfig,
        on_scale=None,
    ):
        self._recognizer = recognizer
        self._transcript = transcript
        self._listener = listener
        self._language = language

        self._token = 0
        self._handle: Optional[RecognitionHandle] = None
        self._reader: Optional[asyncio.Task] = None

        self.countdown = SilenceCountdown(
            pause_sec=timing.speech_pause_sec,
            duration_sec=timing.countdown_sec,
            tick_sec=timing.countdown_tick_sec,
            on_expire=self._on_countdown_expired,
            is_current=self.is_current,
            on_scale=on_scale,
            activity_scale=timing.activity_ring_scale,
        )

    # -- introspection --------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def token(self) -> int:
        return self._token

    @property
    def has_speech(self) -> bool:
        return self.active and bool(self._transcript)

    def is_current(self, token: int) -> bool:
        return self._handle is not None and token == self._token

    # -- lifecycle ------------------------------------------------------------

    def begin(self) -> int:
        """Open a fresh recognition instance and return its session token.

        Raises:
            CaptureUnsupported: no recognition capability on this platform.
            CaptureFatal:       the capability refused to start.
        """
        if self._recognizer is None or not self._recognizer.supported:
            raise CaptureUnsupported("Speech recognition not supported on this platform.")

        self.abort()
        self._token += 1
        token = self._token
        self._transcript.reset()

        try:
            handle = self._recognizer.begin(self._language)
        except CaptureUnsupported:
            raise
        except Exception as exc:
            log.error("event=capture_start_failed token=%d error=%s", token, exc)
            raise CaptureFatal("start-failed", str(exc)) from exc

        self._handle = handle
        self._reader = asyncio.create_task(self._read(token, handle), name=f"capture_{token}")
        log.info("event=capture_begin token=%d language=%s", token, self._language)
        return token

    def abort(self) -> None:
        """Release the recognition instance and cancel the countdown.

        Safe to call at any time, including when no session is open.
        """
        was_active = self._handle is not None
        self._release()
        if was_active:
            log.info("event=capture_abort token=%d", self._token)

    def finish_now(self) -> str:
        """Take the transcript and close the session without waiting."""
        text = self._transcript.text
        self._transcript.reset()
        self.abort()
        return text

    def _release(self) -> None:
        handle, reader = self._handle, self._reader
        self._handle = None
        self._reader = None
        self._token += 1
        self.countdown.cancel()
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if handle is not None:
            try:
                handle.abort()
            except Exception as exc:
                log.warning("event=capture_release_error error=%s", exc)

    # -- event handling -------------------------------------------------------

    async def _read(self, token: int, handle: RecognitionHandle) -> None:
        try:
            async for event in handle.events():
                if not self.is_current(token):
                    return
                if event.kind is RecognitionEventKind.RESULT:
                    self._on_result(token, event)
                elif event.kind is RecognitionEventKind.ERROR:
                    self._on_error(token, event)
                else:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self.is_current(token):
                return
            log.warning("event=capture_stream_error token=%d error=%s", token, exc)
            self._listener.on_capture_error(CaptureFatal("stream-error", str(exc)))

        if self.is_current(token):
            self._on_platform_end(token)

    def _on_result(self, token: int, event: RecognitionEvent) -> None:
        self._transcript.merge(event.text, event.is_final)
        if not self._transcript:
            return
        log.debug(
            "event=capture_result token=%d final=%s text=%.80s",
            token, event.is_final, self._transcript.text,
        )
        self._listener.on_capture_activity(self._transcript.text)
        self.countdown.arm_on_activity(token)

    def _on_error(self, token: int, event: RecognitionEvent) -> None:
        error = classify_capture_error(event.error, event.detail)
        if isinstance(error, CaptureTransient):
            log.debug("event=capture_error_ignored token=%d code=%s", token, error.code)
            return
        log.warning("event=capture_error token=%d code=%s detail=%s", token, event.error, event.detail)
        self._listener.on_capture_error(error)

    def _on_platform_end(self, token: int) -> None:
        text = self._transcript.text
        self._transcript.reset()
        self._release()
        log.info("event=capture_ended token=%d transcript_len=%d", token, len(text))
        self._listener.on_capture_ended(text)

    def _on_countdown_expired(self, token: int) -> None:
        if not self.is_current(token):
            return
        text = self._transcript.text
        self._transcript.reset()
        self._release()
        log.info("event=capture_complete token=%d transcript_len=%d", token, len(text))
        self._listener.on_capture_complete(text)
