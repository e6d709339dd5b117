import base64
import io
import json

import numpy as np
import pytest
import soundfile as sf

try:
    import sounddevice  # noqa: F401  PortAudio is loaded at import time
except OSError:
    pytest.skip("PortAudio not available", allow_module_level=True)

from config import CameraConfig, DeepgramConfig

from apps.pipeline import camera
from apps.pipeline.camera import OpenCVCamera, encode_jpeg_base64
from apps.pipeline.capture import RecognitionEventKind
from apps.pipeline.deepgram_capture import DeepgramRecognizer, build_listen_url, parse_result
from apps.pipeline.groq_speech import PLAYBACK_RATE, decode_wav, thinking_chime


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------

def test_encode_jpeg_base64():
    image = np.full((32, 32, 3), 127, dtype=np.uint8)

    encoded = encode_jpeg_base64(image, quality=80)

    assert base64.b64decode(encoded)[:2] == b"\xff\xd8"


class FakeCapture:
    def __init__(self, opened=True, frame=None):
        self.opened = opened
        self.frame = frame
        self.released = False

    def isOpened(self):
        return self.opened

    def read(self):
        return (self.frame is not None, self.frame)

    def release(self):
        self.released = True


def test_camera_returns_encoded_frame(monkeypatch):
    image = np.zeros((24, 24, 3), dtype=np.uint8)
    cap = FakeCapture(frame=image)
    monkeypatch.setattr(camera.cv2, "VideoCapture", lambda index: cap)

    cam = OpenCVCamera(CameraConfig())
    frame = cam.capture_frame()
    cam.close()

    assert frame is not None
    assert frame.image is image
    assert frame.encoded
    assert cap.released


def test_camera_not_ready_returns_none(monkeypatch):
    monkeypatch.setattr(camera.cv2, "VideoCapture", lambda index: FakeCapture(opened=False))

    assert OpenCVCamera(CameraConfig()).capture_frame() is None


def test_camera_without_frame_returns_none(monkeypatch):
    monkeypatch.setattr(camera.cv2, "VideoCapture", lambda index: FakeCapture(frame=None))

    assert OpenCVCamera(CameraConfig()).capture_frame() is None


# ---------------------------------------------------------------------------
# Deepgram
# ---------------------------------------------------------------------------

def test_listen_url_carries_config():
    url = build_listen_url(DeepgramConfig(utterance_end_ms=1500))

    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert "model=nova-3" in url
    assert "language=en-US" in url
    assert "interim_results=true" in url
    assert "utterance_end_ms=1500" in url
    assert "encoding=linear16" in url


def test_parse_result_messages():
    result = json.dumps({
        "type": "Results",
        "is_final": True,
        "channel": {"alternatives": [{"transcript": "hello there"}]},
    })
    event = parse_result(result)
    assert event.kind is RecognitionEventKind.RESULT
    assert event.text == "hello there"
    assert event.is_final

    empty = json.dumps({"type": "Results", "channel": {"alternatives": [{"transcript": " "}]}})
    assert parse_result(empty) is None
    assert parse_result(json.dumps({"type": "Metadata"})) is None

    error = parse_result(json.dumps({"type": "Error", "err_code": "INVALID_AUTH", "err_msg": "bad key"}))
    assert error.kind is RecognitionEventKind.ERROR
    assert error.error == "INVALID_AUTH"


def test_recognizer_needs_api_key():
    assert not DeepgramRecognizer(DeepgramConfig(), None).supported
    assert DeepgramRecognizer(DeepgramConfig(), "key").supported


# ---------------------------------------------------------------------------
# Groq speech
# ---------------------------------------------------------------------------

def test_thinking_chime_is_short_and_quiet():
    chime = thinking_chime()

    assert chime.dtype == np.float32
    assert len(chime) == int(PLAYBACK_RATE * 0.4)
    assert np.abs(chime).max() < 0.151


def test_decode_wav_resamples_to_playback_rate():
    buf = io.BytesIO()
    sf.write(buf, np.zeros((16000, 2), dtype=np.float32), 16000, format="WAV")

    samples = decode_wav(buf.getvalue())

    assert samples.ndim == 1
    assert samples.dtype == np.float32
    assert len(samples) == PLAYBACK_RATE
