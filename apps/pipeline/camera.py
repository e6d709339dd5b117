"""Camera frame capture for turn submissions and proactive probes."""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from config import CameraConfig

log = logging.getLogger("jia.camera")


@dataclass(frozen=True)
class Frame:
    image: Optional[np.ndarray]
    encoded: str  # base64 JPEG, ready for the request body


class FrameSource(ABC):
    @abstractmethod
    def capture_frame(self) -> Optional[Frame]:
        """Current frame, or None while the camera is not ready."""

    def close(self) -> None:
        pass


def encode_jpeg_base64(image: np.ndarray, quality: int = 90) -> Optional[str]:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return None
    return base64.b64encode(buf).decode("utf-8")


class OpenCVCamera(FrameSource):
    """Grabs frames from a local capture device on demand."""

    def __init__(self, cfg: CameraConfig):
        self._cfg = cfg
        self._cap: Optional[cv2.VideoCapture] = None

    def _ensure_open(self) -> bool:
        if self._cap is not None and self._cap.isOpened():
            return True
        self._cap = cv2.VideoCapture(self._cfg.device_index)
        if not self._cap.isOpened():
            log.warning("event=camera_unavailable device=%d", self._cfg.device_index)
            self._cap = None
            return False
        log.info("event=camera_opened device=%d", self._cfg.device_index)
        return True

    def capture_frame(self) -> Optional[Frame]:
        if not self._ensure_open():
            return None
        ok, image = self._cap.read()
        if not ok or image is None:
            log.debug("event=camera_frame_missing")
            return None
        encoded = encode_jpeg_base64(image, self._cfg.jpeg_quality)
        if encoded is None:
            log.warning("event=camera_encode_failed")
            return None
        return Frame(image=image, encoded=encoded)

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
