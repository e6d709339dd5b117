"""
speech_queue.py — sequential spoken output
==========================================
Segments are spoken strictly in the order they were enqueued.  The queue
owns PendingUtteranceCount: it rises on enqueue, falls when a segment
finishes (or fails), and reaching zero is the one signal that lets the
conversation go back to listening.

flush_all() is the barge-in path: every queued and playing segment is
cancelled and the count drops to zero at once.  Completions that belong to
a flushed generation are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Optional

from apps.pipeline.errors import SynthesisError

log = logging.getLogger("jia.speech_queue")


class Synthesizer(ABC):
    """Speech synthesis capability supplied by the platform."""

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Speak *text*; return when playback has finished.

        Raises SynthesisError when the segment cannot be spoken.
        """

    @abstractmethod
    def cancel_all(self) -> None:
        """Silence the current segment and drop anything buffered."""

    def chime(self) -> None:
        """Short cue played when a turn is sent.  Optional."""


class SpeechOutputQueue:
    def __init__(
        self,
        synthesizer: Synthesizer,
        on_drained: Optional[Callable[[], None]] = None,
    ):
        self._synth = synthesizer
        self._on_drained = on_drained
        self._segments: deque[tuple[int, str]] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._pending = 0
        self._speaking = False
        self._generation = 0

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def speaking(self) -> bool:
        return self._speaking

    def enqueue(self, segment: str) -> None:
        self._pending += 1
        self._speaking = True
        self._segments.append((self._generation, segment))
        log.debug("event=segment_enqueued pending=%d text=%.60s", self._pending, segment)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain_loop(), name="speech_output_queue")

    def flush_all(self) -> None:
        """Cancel every queued / playing segment and zero the count."""
        dropped = self._pending
        self._generation += 1
        self._segments.clear()
        worker = self._worker
        if worker is not None and not worker.done() and worker is not asyncio.current_task():
            worker.cancel()
        self._worker = None
        self._synth.cancel_all()
        self._pending = 0
        self._speaking = False
        if dropped:
            log.info("event=speech_flushed dropped=%d", dropped)

    async def _drain_loop(self) -> None:
        while self._segments:
            generation, segment = self._segments.popleft()
            if generation != self._generation:
                continue
            try:
                await self._synth.speak(segment)
            except asyncio.CancelledError:
                raise
            except SynthesisError as exc:
                log.warning("event=synthesis_error error=%s text=%.60s", exc, segment)
            except Exception as exc:
                log.error("event=synthesis_error error=%s text=%.60s", exc, segment, exc_info=True)
            if generation != self._generation:
                continue
            self._complete_one()

    def _complete_one(self) -> None:
        self._pending = max(0, self._pending - 1)
        log.debug("event=segment_done pending=%d", self._pending)
        if self._pending == 0:
            self._speaking = False
            log.info("event=speech_drained")
            if self._on_drained is not None:
                self._on_drained()
