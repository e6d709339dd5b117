"""
silence_countdown.py — auto-submit after a pause in speech
==========================================================
Every speech-activity event re-arms the countdown:

    activity ──► quiet period (speech_pause_sec) ──► decay 1.0 → 0.0 over
                                                     countdown_sec ──► expire

The decay is sampled on a fixed tick.  Each tick recomputes the elapsed
fraction from the start time captured when the decay began, so the ring
never drifts however late individual ticks run.  A tick whose owner (the
capture session token it was armed for) is no longer current does nothing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger("jia.countdown")


class SilenceCountdown:
    def __init__(
        self,
        *,
        pause_sec: float,
        duration_sec: float,
        tick_sec: float,
        on_expire: Callable[[int], None],
        is_current: Callable[[int], bool],
        on_scale: Optional[Callable[[float], None]] = None,
        activity_scale: float = 1.4,
    ):
        self._pause_sec = pause_sec
        self._duration_sec = duration_sec
        self._tick_sec = tick_sec
        self._on_expire = on_expire
        self._is_current = is_current
        self._on_scale = on_scale
        self._activity_scale = activity_scale

        self._task: Optional[asyncio.Task] = None
        self._elapsed_fraction = 0.0
        self._deadline: Optional[float] = None

    @property
    def elapsed_fraction(self) -> float:
        """0.0 = just reset (full ring), 1.0 = expired."""
        return self._elapsed_fraction

    @property
    def scale(self) -> float:
        return 1.0 - self._elapsed_fraction

    @property
    def deadline(self) -> Optional[float]:
        """Loop time at which the running decay reaches zero, if decaying."""
        return self._deadline

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm_on_activity(self, owner: int) -> None:
        self.cancel()
        self._emit_scale(self._activity_scale)
        self._task = asyncio.create_task(self._run(owner), name="silence_countdown")

    def cancel(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.debug("event=countdown_cancel")
        self._task = None
        self._reset()

    def _reset(self) -> None:
        self._elapsed_fraction = 0.0
        self._deadline = None
        self._emit_scale(1.0)

    def _emit_scale(self, value: float) -> None:
        if self._on_scale is not None:
            self._on_scale(value)

    async def _run(self, owner: int) -> None:
        await asyncio.sleep(self._pause_sec)
        if not self._is_current(owner):
            log.debug("event=countdown_stale owner=%d stage=pause", owner)
            return

        loop = asyncio.get_running_loop()
        started = loop.time()
        self._deadline = started + self._duration_sec
        self._elapsed_fraction = 0.0
        self._emit_scale(1.0)
        log.debug("event=countdown_start owner=%d duration_ms=%d", owner, int(self._duration_sec * 1000))

        while self._elapsed_fraction < 1.0:
            await asyncio.sleep(self._tick_sec)
            if not self._is_current(owner):
                log.debug("event=countdown_stale owner=%d stage=decay", owner)
                return
            self._elapsed_fraction = min((loop.time() - started) / self._duration_sec, 1.0)
            self._emit_scale(1.0 - self._elapsed_fraction)

        self._task = None
        self._reset()
        log.info("event=countdown_expired owner=%d", owner)
        self._on_expire(owner)
