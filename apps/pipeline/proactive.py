"""
proactive.py — unprompted scene observations
============================================
Every proactive_interval_sec the monitor looks at the camera.  A tick only
submits an observation turn when all of these hold:

  1. the coordinator reports the conversation idle between turns
     (active, LISTENING, no request, no captured user speech)
  2. a frame is available
  3. the frame's fingerprint differs from the last one observed

The model is told to answer with the silence sentinel when nothing is worth
saying, so most probes end without speech.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Callable, Optional

import numpy as np

from apps.pipeline.camera import Frame

log = logging.getLogger("jia.proactive")

HASH_SIZE = 8


def fingerprint(frame: Frame) -> str:
    """8×8 average hash of the frame; hash of the encoded bytes without pixels."""
    image = frame.image
    if image is None or getattr(image, "size", 0) == 0:
        return hashlib.blake2b(frame.encoded.encode("ascii"), digest_size=8).hexdigest()

    pixels = np.asarray(image, dtype=np.float32)
    if pixels.ndim == 3:
        pixels = pixels.mean(axis=2)
    h, w = pixels.shape
    # Crop to a multiple of HASH_SIZE, then block-average.
    bh, bw = max(h // HASH_SIZE, 1), max(w // HASH_SIZE, 1)
    pixels = pixels[: bh * HASH_SIZE, : bw * HASH_SIZE]
    if pixels.shape[0] < HASH_SIZE or pixels.shape[1] < HASH_SIZE:
        return hashlib.blake2b(pixels.tobytes(), digest_size=8).hexdigest()
    blocks = pixels.reshape(HASH_SIZE, bh, HASH_SIZE, bw).mean(axis=(1, 3))
    bits = (blocks > blocks.mean()).flatten()
    return f"{int(''.join('1' if b else '0' for b in bits), 2):016x}"


class ProactiveMonitor:
    def __init__(
        self,
        *,
        interval_sec: float,
        prompt: str,
        is_idle: Callable[[], bool],
        capture_frame: Callable[[], Optional[Frame]],
        submit: Callable[[str, Optional[Frame], bool], bool],
    ):
        self._interval = interval_sec
        self._prompt = prompt
        self._is_idle = is_idle
        self._capture_frame = capture_frame
        self._submit = submit
        self._last_fingerprint: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_fingerprint(self) -> Optional[str]:
        return self._last_fingerprint

    def arm(self) -> None:
        self.disarm()
        self._last_fingerprint = None
        self._task = asyncio.create_task(self._loop(), name="proactive_monitor")
        log.info("event=proactive_armed interval_sec=%.1f", self._interval)

    def disarm(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.info("event=proactive_disarmed")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.tick()
            except Exception as exc:
                # Probes are best-effort; keep ticking.
                log.warning("event=proactive_tick_error error=%s", exc, exc_info=True)

    def tick(self) -> bool:
        """Run one probe.  True when an observation turn was submitted."""
        if not self._is_idle():
            log.debug("event=proactive_skip reason=busy")
            return False

        frame = self._capture_frame()
        if frame is None:
            log.debug("event=proactive_skip reason=no_frame")
            return False

        fp = fingerprint(frame)
        if fp == self._last_fingerprint:
            log.debug("event=proactive_skip reason=unchanged")
            return False
        self._last_fingerprint = fp

        accepted = self._submit(self._prompt, frame, True)
        log.info("event=proactive_probe fingerprint=%s accepted=%s", fp, accepted)
        return accepted
