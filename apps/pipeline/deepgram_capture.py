"""
deepgram_capture.py — Deepgram live recognition
===============================================
Recognizer that streams the microphone to Deepgram's /v1/listen websocket.

    sd.InputStream (audio thread) ──call_soon_threadsafe──► asyncio.Queue
        ──sender task──► websocket ──► Results ──► RecognitionEvent

The microphone is opened per recognition session and closed on abort, so
only one session can hold it.  The websocket closing on its own (server
timeout, network drop) ends the session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import sounddevice as sd
import websockets

from config import DeepgramConfig

from apps.pipeline.capture import RecognitionEvent, RecognitionHandle, Recognizer

log = logging.getLogger("jia.deepgram")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
MIC_BLOCKSIZE = 1280


def build_listen_url(cfg: DeepgramConfig) -> str:
    params = {
        "model": cfg.model,
        "language": cfg.language,
        "interim_results": str(cfg.interim_results).lower(),
        "endpointing": cfg.endpointing,
        "smart_format": "true",
        "punctuate": "true",
        "encoding": "linear16",
        "sample_rate": cfg.sample_rate,
        "channels": 1,
    }
    if cfg.utterance_end_ms is not None:
        params["utterance_end_ms"] = cfg.utterance_end_ms
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


def parse_result(message: str) -> Optional[RecognitionEvent]:
    """Map one Deepgram message onto a RecognitionEvent (None to ignore)."""
    result = json.loads(message)
    msg_type = result.get("type")
    if msg_type == "Error" or "err_code" in result:
        return RecognitionEvent.failure(
            str(result.get("err_code") or "network"),
            str(result.get("err_msg") or result.get("description") or ""),
        )
    if msg_type not in (None, "Results") or "channel" not in result:
        return None
    alternatives = result["channel"].get("alternatives") or []
    if not alternatives:
        return None
    transcript = alternatives[0].get("transcript", "")
    if not transcript.strip():
        return None
    return RecognitionEvent.result(transcript, is_final=bool(result.get("is_final")))


class DeepgramSession(RecognitionHandle):
    def __init__(self, url: str, api_key: str, sample_rate: int):
        self._url = url
        self._api_key = api_key
        self._sample_rate = sample_rate
        self._mic: Optional[sd.InputStream] = None
        self._audio: asyncio.Queue[bytes] = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None
        self._closed = False

    def _open_mic(self) -> None:
        loop = asyncio.get_running_loop()

        def audio_callback(indata, _frames, _time, status):
            if status:
                log.debug("event=mic_status status=%s", status)
            loop.call_soon_threadsafe(self._audio.put_nowait, bytes(indata))

        self._mic = sd.InputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="int16",
            blocksize=MIC_BLOCKSIZE,
            callback=audio_callback,
        )
        self._mic.start()
        log.info("event=mic_started")

    async def _send_audio(self, ws) -> None:
        while not self._closed:
            chunk = await self._audio.get()
            await ws.send(chunk)

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            async with websockets.connect(self._url, additional_headers=headers) as ws:
                try:
                    self._open_mic()
                except sd.PortAudioError as exc:
                    yield RecognitionEvent.failure("audio-capture", str(exc))
                    return
                self._sender = asyncio.create_task(self._send_audio(ws), name="deepgram_sender")
                try:
                    async for message in ws:
                        if isinstance(message, bytes):
                            continue
                        try:
                            event = parse_result(message)
                        except json.JSONDecodeError:
                            log.debug("event=deepgram_bad_message")
                            continue
                        if event is not None:
                            yield event
                finally:
                    if not self._closed:
                        try:
                            await ws.send(json.dumps({"type": "CloseStream"}))
                        except websockets.ConnectionClosed:
                            pass
                    self._shutdown()
        except websockets.InvalidStatus as exc:
            yield RecognitionEvent.failure("not-allowed", str(exc))
        except (OSError, websockets.WebSocketException) as exc:
            yield RecognitionEvent.failure("network", str(exc))
        yield RecognitionEvent.end()

    def _shutdown(self) -> None:
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
        if self._mic is not None:
            try:
                self._mic.stop()
                self._mic.close()
            except sd.PortAudioError as exc:
                log.warning("event=mic_close_error error=%s", exc)
            self._mic = None
            log.info("event=mic_stopped")

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._shutdown()


class DeepgramRecognizer(Recognizer):
    def __init__(self, cfg: DeepgramConfig, api_key: Optional[str]):
        self._cfg = cfg
        self._api_key = api_key

    @property
    def supported(self) -> bool:
        return bool(self._api_key)

    def begin(self, language: str) -> RecognitionHandle:
        cfg = self._cfg.model_copy(update={"language": language})
        return DeepgramSession(build_listen_url(cfg), self._api_key or "", cfg.sample_rate)
