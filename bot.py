"""
bot.py — Jia Voice Companion · Device Entrypoint
================================================
Runs the conversation loop on the device: microphone → Deepgram live
recognition, camera frames via OpenCV, replies from the relay spoken with
Groq TTS.

Usage
-----
    python bot.py [config.json]

The config path may also come from JIA_CONFIG.  Without either, defaults
are used.

Console controls
----------------
    Enter   orb gesture (interrupt Jia / send what you said now)
    s       stop or restart the conversation
    q       quit

Pipeline
--------
DeepgramRecognizer (mic in)
    → CaptureSession (silence countdown)
    → ConversationCoordinator ── RelayChatBackend (/api/chat-stream)
    → ResponseStreamConsumer (sentence split)
    → SpeechOutputQueue → GroqSpeaker (speaker out)
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time

from dotenv import load_dotenv

load_dotenv()

from config import VoiceEngineConfig

from apps.pipeline.backend import RelayChatBackend
from apps.pipeline.camera import OpenCVCamera
from apps.pipeline.coordinator import ConversationCoordinator
from apps.pipeline.deepgram_capture import DeepgramRecognizer
from apps.pipeline.groq_speech import GroqSpeaker

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("JIA_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("jia.bot")

# ---------------------------------------------------------------------------
# Runtime secrets (from env)
# ---------------------------------------------------------------------------
DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY")
GROQ_API_KEY     = os.getenv("GROQ_API_KEY")


async def _stall_monitor() -> None:
    """Log a warning whenever the event loop blocks for > 150ms."""
    TICK_MS   = 100.0
    WARN_MS   = 150.0
    prev = time.perf_counter() * 1000.0
    while True:
        await asyncio.sleep(TICK_MS / 1000.0)
        now   = time.perf_counter() * 1000.0
        drift = now - prev - TICK_MS
        if drift > WARN_MS:
            log.warning("event=event_loop_stall stall_ms=%.1f", drift)
        prev = now


async def _error_watch(coordinator: ConversationCoordinator, interval: float = 0.25, out=None) -> None:
    """Print each new user-visible error as soon as the loop records it."""
    out = out or sys.stderr
    shown = ""
    while True:
        error = coordinator.state.error
        if error and error != shown:
            print(f"[jia] {error}", file=out, flush=True)
        shown = error
        await asyncio.sleep(interval)


async def _console(coordinator: ConversationCoordinator) -> None:
    """Map console lines onto the orb gesture and start/stop."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return  # stdin closed
        cmd = line.strip().lower()
        if cmd == "q":
            return
        if cmd == "s":
            if coordinator.state.active:
                coordinator.stop()
            else:
                coordinator.start()
        elif cmd == "":
            coordinator.on_orb_activate()
        else:
            print("Enter = orb · s = start/stop · q = quit", file=sys.stderr)


async def main(config: VoiceEngineConfig) -> None:
    log.info("event=bot_start relay=%s", config.relay.base_url)
    if not DEEPGRAM_API_KEY:
        log.warning("event=deepgram_key_missing — speech recognition unavailable")

    camera     = OpenCVCamera(config.camera)
    recognizer = DeepgramRecognizer(config.deepgram, DEEPGRAM_API_KEY)
    speaker    = GroqSpeaker(config.groq, api_key=GROQ_API_KEY)
    backend    = RelayChatBackend(config.relay, config.system_prompt)

    coordinator = ConversationCoordinator(
        config,
        recognizer=recognizer,
        synthesizer=speaker,
        backend=backend,
        frame_source=camera,
    )

    monitor = asyncio.create_task(_stall_monitor())
    errors  = asyncio.create_task(_error_watch(coordinator))
    try:
        coordinator.start()
        await _console(coordinator)
    finally:
        coordinator.stop()
        for task in (monitor, errors):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await backend.aclose()
        speaker.close()
        camera.close()
        log.info("event=bot_shutdown")


if __name__ == "__main__":
    config_path = sys.argv[1] if len(sys.argv) > 1 else os.getenv("JIA_CONFIG")
    _config = VoiceEngineConfig.load(config_path)
    try:
        asyncio.run(main(_config))
    except KeyboardInterrupt:
        pass
