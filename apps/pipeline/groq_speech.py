"""
groq_speech.py — Groq TTS speaker
=================================
Synthesizer backed by Groq's speech endpoint (Orpheus voices).  Each segment
is synthesized off the event loop, decoded in memory, resampled to the
playback rate when needed and written to a sounddevice output stream.
speak() returns once the audio thread has played the last sample.
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from math import gcd
from typing import Callable, Optional

import numpy as np
import scipy.signal
import sounddevice as sd
import soundfile as sf
from groq import Groq

from config import GroqConfig

from apps.pipeline.errors import SynthesisError
from apps.pipeline.speech_queue import Synthesizer

log = logging.getLogger("jia.speech")

PLAYBACK_RATE = 24000  # Orpheus default
MAX_TTS_CHARS = 200


def thinking_chime(rate: int = PLAYBACK_RATE, duration: float = 0.4) -> np.ndarray:
    """Rising 660 → 880 Hz sweep with a linear fade-out."""
    t = np.linspace(0.0, duration, int(rate * duration), endpoint=False, dtype=np.float32)
    freq = 660.0 + (880.0 - 660.0) * (t / duration)
    phase = 2.0 * np.pi * np.cumsum(freq) / rate
    envelope = 0.15 * (1.0 - t / duration)
    return (envelope * np.sin(phase)).astype(np.float32)


def decode_wav(wav_bytes: bytes, target_rate: int = PLAYBACK_RATE) -> np.ndarray:
    """Decode WAV bytes to float32 mono at *target_rate*."""
    data, sr = sf.read(io.BytesIO(wav_bytes), dtype="float32")
    if data.ndim == 2:
        data = data[:, 0]  # mono
    if sr != target_rate:
        g = gcd(int(sr), target_rate)
        data = scipy.signal.resample_poly(data, target_rate // g, int(sr) // g).astype(np.float32)
    return data


class StreamingPlayback:
    """Lock-protected sample buffer drained by the sounddevice callback.

    on_drained fires on the audio thread whenever the buffer runs empty
    after having held audio.
    """

    CHANNELS = 1

    def __init__(self, samplerate: int = PLAYBACK_RATE, on_drained: Optional[Callable[[], None]] = None):
        self._samplerate = samplerate
        self._on_drained = on_drained
        self._buf: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream: Optional[sd.OutputStream] = None
        self._holding = False

    def open(self) -> None:
        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            samplerate=self._samplerate,
            channels=self.CHANNELS,
            dtype="float32",
            callback=self._callback,
            blocksize=1024,
        )
        self._stream.start()

    def write(self, samples: np.ndarray) -> None:
        self.open()
        with self._lock:
            self._buf.append(samples)
            self._holding = True

    @property
    def holding(self) -> bool:
        with self._lock:
            return self._holding

    def clear(self) -> None:
        with self._lock:
            self._buf.clear()
            self._holding = False

    def close(self) -> None:
        self.clear()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as exc:
                log.warning("event=playback_close_error error=%s", exc)
            self._stream = None

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        needed = frames
        pos = 0
        drained = False
        with self._lock:
            while needed > 0 and self._buf:
                chunk = self._buf[0]
                take = min(needed, len(chunk))
                outdata[pos:pos + take, 0] = chunk[:take]
                pos += take
                needed -= take
                if take < len(chunk):
                    self._buf[0] = chunk[take:]
                else:
                    self._buf.pop(0)
            if self._holding and not self._buf:
                self._holding = False
                drained = True
        if needed > 0:
            outdata[pos:, 0] = 0.0
        if drained and self._on_drained is not None:
            self._on_drained()


class GroqSpeaker(Synthesizer):
    def __init__(self, cfg: GroqConfig, api_key: Optional[str] = None, client: Optional[Groq] = None):
        self._cfg = cfg
        self._client = client or Groq(api_key=api_key)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done: Optional[asyncio.Event] = None
        self._playback = StreamingPlayback(on_drained=self._signal_drained)

    def _signal_drained(self) -> None:
        # Audio thread → event loop.
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._on_drained)

    def _on_drained(self) -> None:
        # A drain from an earlier write (the chime) must not end this segment.
        if self._done is not None and not self._playback.holding:
            self._done.set()

    def _synthesize(self, text: str) -> bytes:
        return self._client.audio.speech.create(
            model=self._cfg.tts_model,
            voice=self._cfg.tts_voice,
            input=text[:MAX_TTS_CHARS],
            response_format="wav",
        ).read()

    async def speak(self, text: str) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            wav_bytes = await self._loop.run_in_executor(None, self._synthesize, text)
            samples = decode_wav(wav_bytes)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise SynthesisError(f"TTS failed: {exc}") from exc

        if samples.size == 0:
            return
        self._done = asyncio.Event()
        log.debug("event=tts_playback_start samples=%d text=%.60s", samples.size, text)
        try:
            self._playback.write(samples)
        except sd.PortAudioError as exc:
            raise SynthesisError(f"Playback failed: {exc}") from exc
        await self._done.wait()
        log.debug("event=tts_playback_done")

    def cancel_all(self) -> None:
        self._playback.clear()
        if self._done is not None:
            self._done.set()
        log.info("event=playback_interrupted")

    def chime(self) -> None:
        try:
            self._playback.write(thinking_chime())
        except sd.PortAudioError as exc:
            log.warning("event=chime_failed error=%s", exc)

    def close(self) -> None:
        self._playback.close()
