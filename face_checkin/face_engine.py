import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import EXTRACTOR_DEVICE, FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE
from .exceptions import ExtractionFailed, FaceEngineError, NoFaceDetected
from .logger import setup_logger

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

Box = Tuple[int, int, int, int]


def resolve_device(preferred: Optional[str] = None) -> str:
    if preferred:
        return preferred
    return "cuda" if torch.cuda.is_available() else "cpu"


def select_optimal_face(detections: Sequence[Tuple[Box, float]]) -> Optional[int]:
    """Index of the detection with the best score * sqrt(area), if any."""
    best_idx: Optional[int] = None
    best_quality = -1.0
    for idx, ((x1, y1, x2, y2), score) in enumerate(detections):
        width, height = x2 - x1, y2 - y1
        if width <= 0 or height <= 0:
            continue
        quality = float(score) * math.sqrt(width * height)
        if quality > best_quality:
            best_idx = idx
            best_quality = quality
    return best_idx


class FaceEngine:
    """Face detector plus embedding model; one embedding per image."""

    def __init__(
        self,
        device: Optional[str] = None,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
    ):
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the package dependencies first.")

        self.device = torch.device(resolve_device(device))
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        # mediapipe graphs are not safe to drive from several threads at once.
        self._lock = threading.Lock()

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=detection_threshold,
            )

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

    def extract(self, image_bytes: bytes) -> np.ndarray:
        frame = self._decode(image_bytes)
        with self._lock:
            crop = self._best_face_crop(frame)
            return self._embed(crop)

    @staticmethod
    def _decode(image_bytes: bytes) -> np.ndarray:
        if not image_bytes:
            raise ExtractionFailed("Empty image payload.")
        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if frame is None:
            raise ExtractionFailed("Unable to decode image; expected JPEG or PNG bytes.")
        return frame

    def _best_face_crop(self, frame: np.ndarray) -> np.ndarray:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise ExtractionFailed(f"Face detection failed: {exc}") from exc

        if not result.detections:
            raise NoFaceDetected("No face detected. Move closer and make sure the face is well lit.")

        h, w = frame.shape[:2]
        candidates: List[Tuple[Box, float]] = []
        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))
            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue
            candidates.append(((x1, y1, x2, y2), score))

        idx = select_optimal_face(candidates)
        if idx is None:
            raise NoFaceDetected("Detected face is too small or too uncertain.")

        crop = self._square_crop(rgb, candidates[idx][0])
        if crop.size == 0:
            raise NoFaceDetected("Face crop is empty.")
        return crop

    def _embed(self, crop: np.ndarray) -> np.ndarray:
        try:
            tensor = torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
            batch = (tensor.unsqueeze(0).to(self.device) - self.mean) / self.std
            with torch.inference_mode():
                raw = self.embedder(batch)
                normed = f.normalize(raw, p=2, dim=1)
            return normed[0].detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise ExtractionFailed(f"Embedding generation failed: {exc}") from exc

    @staticmethod
    def _square_crop(rgb: np.ndarray, box: Box) -> np.ndarray:
        h, w = rgb.shape[:2]
        x1, y1, x2, y2 = box
        side = int(max(x2 - x1, y2 - y1) * 1.05)
        cx = (x1 + x2) // 2
        cy = (y1 + y2) // 2

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)
        return rgb[sy1:sy2, sx1:sx2]

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < 224 else cv2.INTER_AREA
        resized = cv2.resize(crop, (224, 224), interpolation=interpolation)

        # Even out illumination before embedding.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        return cv2.cvtColor(cv2.merge([y_channel, cr_channel, cb_channel]), cv2.COLOR_YCrCb2RGB)


@dataclass
class ExtractorHandle:
    """Result of loading the extractor once per process; pass it to whoever extracts."""

    engine: FaceEngine
    device: str
    loaded_at: datetime = field(default_factory=datetime.now)

    def extract(self, image_bytes: bytes) -> np.ndarray:
        return self.engine.extract(image_bytes)


def load_extractor(device: Optional[str] = EXTRACTOR_DEVICE) -> ExtractorHandle:
    logger = setup_logger("FaceEngine")
    resolved = resolve_device(device)
    logger.info("Loading face models on %s", resolved)
    engine = FaceEngine(device=resolved)
    logger.info("Face models ready")
    return ExtractorHandle(engine=engine, device=resolved)
