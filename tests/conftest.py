import os
import tempfile
from datetime import datetime, timedelta
from typing import Dict, Optional

# Keep test logs out of the working tree; config reads this at import time.
os.environ.setdefault("CHECKIN_LOG_DIR", tempfile.mkdtemp(prefix="checkin-logs-"))

import numpy as np
import pytest

from face_checkin.attendance_service import AttendanceService
from face_checkin.config import ThresholdPolicy
from face_checkin.database import AttendanceDatabase
from face_checkin.exceptions import NoFaceDetected
from face_checkin.recognition_service import RecognitionService
from face_checkin.registration_service import EnrollmentRegistrar

DIM = 8


def basis(axis: int, dim: int = DIM) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float64)
    vector[axis] = 1.0
    return vector


def query_with(weights: Dict[int, float], dim: int = DIM) -> np.ndarray:
    """Unit vector whose cosine with ``basis(axis)`` equals ``weights[axis]``.

    The remaining length goes on the last axis, which no test identity uses.
    """
    vector = np.zeros(dim, dtype=np.float64)
    for axis, weight in weights.items():
        vector[axis] = weight
    rest = 1.0 - float(np.dot(vector, vector))
    assert rest >= 0.0
    vector[dim - 1] = np.sqrt(rest)
    return vector


class FakeExtractor:
    """Maps image bytes to fixed embeddings; anything unknown has no face."""

    def __init__(self, faces: Optional[Dict[bytes, np.ndarray]] = None):
        self.faces: Dict[bytes, np.ndarray] = dict(faces or {})
        self.calls = 0

    def add(self, image_bytes: bytes, embedding: np.ndarray) -> bytes:
        self.faces[image_bytes] = np.asarray(embedding, dtype=np.float32)
        return image_bytes

    def extract(self, image_bytes: bytes) -> np.ndarray:
        self.calls += 1
        if image_bytes not in self.faces:
            raise NoFaceDetected("No face in test image.")
        return self.faces[image_bytes].copy()


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 4, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def policy() -> ThresholdPolicy:
    return ThresholdPolicy(
        embedding_dimensionality=DIM,
        retry_backoff_ms=0,
        store_retry_backoff_ms=0,
    )


@pytest.fixture
def db(tmp_path) -> AttendanceDatabase:
    return AttendanceDatabase(tmp_path / "checkin.db")


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registrar(db, policy) -> EnrollmentRegistrar:
    return EnrollmentRegistrar(db, policy=policy)


@pytest.fixture
def service(db, extractor, policy, clock) -> RecognitionService:
    return RecognitionService(db, extractor, policy=policy, clock=clock, sleep=lambda _seconds: None)


@pytest.fixture
def reports(db, policy, clock) -> AttendanceService:
    return AttendanceService(db, policy=policy, clock=clock)


@pytest.fixture
def alice(registrar, extractor):
    """Alice enrolled on axis 0, with a capture that scores 0.9 against her."""
    registrar.register("alice@example.com", basis(0), display_name="Alice")
    return extractor.add(b"alice-frame", query_with({0: 0.9}))
