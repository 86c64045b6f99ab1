import os
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH, JPEG_QUALITY
from .exceptions import CameraError
from .logger import setup_logger

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "mediafoundation": "Media Foundation",
    "v4l2": "V4L2",
}


def _preferred_backend_order() -> List[str]:
    raw = os.getenv("CHECKIN_CAMERA_BACKEND_ORDER", "").strip()
    if not raw:
        # Windows laptop webcams are generally more stable on DirectShow.
        if os.name == "nt":
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2"]
    result: List[str] = []
    for item in raw.split(","):
        name = _BACKEND_ALIASES.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or ["Auto"]


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def encode_jpeg(frame: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise CameraError("Failed to encode frame as JPEG.")
    return buffer.tobytes()


class CameraStream:
    """A webcam that hands out frames as encoded image bytes."""

    def __init__(self, camera_index: int = 0, jpeg_quality: int = JPEG_QUALITY):
        self.camera_index = camera_index
        self.jpeg_quality = jpeg_quality
        self.cap = None
        self.backend_name: Optional[str] = None
        self.logger = setup_logger(self.__class__.__name__)

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def stream_id(self) -> str:
        return f"camera-{self.camera_index}"

    def open(self) -> None:
        attempted: List[str] = []
        for backend_name, backend in capture_backends():
            attempted.append(backend_name)
            cap = cv2.VideoCapture(self.camera_index) if backend is None else cv2.VideoCapture(self.camera_index, backend)
            if cap.isOpened() and self._reads_frames(cap):
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
                cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
                self.cap = cap
                self.backend_name = backend_name
                self.logger.info("Camera %d opened with %s backend", self.camera_index, backend_name)
                return
            cap.release()

        raise CameraError(f"Unable to open webcam index {self.camera_index}. Tried backends: {', '.join(attempted)}.")

    @staticmethod
    def _reads_frames(cap) -> bool:
        # Some backends report opened=True but never deliver frames.
        for _ in range(6):
            ok, frame = cap.read()
            if ok and frame is not None:
                return True
            time.sleep(0.03)
        return False

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def capture_jpeg(self) -> bytes:
        return encode_jpeg(self.read(), self.jpeg_quality)

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
