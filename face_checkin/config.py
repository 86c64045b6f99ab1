import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("CHECKIN_DATA_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("CHECKIN_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = Path(os.getenv("CHECKIN_DB_PATH", str(DATA_DIR / "checkin.db")))
LOG_LEVEL = os.getenv("CHECKIN_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Webcam settings
CAMERA_INDEX = _int_env("CHECKIN_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("CHECKIN_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("CHECKIN_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("CHECKIN_FRAME_FPS", 30)
JPEG_QUALITY = _int_env("CHECKIN_JPEG_QUALITY", 85)
AUTO_SCAN_ENABLED = _bool_env("CHECKIN_AUTO_SCAN", True)
AUTO_SCAN_INTERVAL_SECONDS = max(0.5, _float_env("CHECKIN_AUTO_SCAN_INTERVAL", 3.0))

# Extractor settings
FACE_DETECTION_THRESHOLD = _float_env("CHECKIN_FACE_DETECTION_THRESHOLD", 0.5)
MIN_FACE_SIZE = _int_env("CHECKIN_MIN_FACE_SIZE", 40)
EXTRACTOR_DEVICE = os.getenv("CHECKIN_DEVICE", "").strip() or None

# Enrollment settings
REGISTRATION_SAMPLES = _int_env("CHECKIN_REGISTRATION_SAMPLES", 5)

# Reasons a failed attempt may be retried with a fresh capture.
QUALITY_FAILURE_REASONS = frozenset(
    {"empty", "corrupted", "low_quality", "dimension_mismatch", "no_face_detected"}
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many capture attempts one session may make and how far apart."""

    max_attempts: int = 2
    backoff_seconds: float = 0.8
    retry_on: frozenset = field(default_factory=lambda: QUALITY_FAILURE_REASONS)

    def should_retry(self, reason: str, attempt: int) -> bool:
        return attempt < self.max_attempts and reason in self.retry_on


@dataclass(frozen=True)
class ThresholdPolicy:
    base_threshold: float = 0.60
    high_threshold: float = 0.75
    base_margin: float = 0.05
    high_margin: float = 0.10
    max_retries: int = 2
    retry_backoff_ms: int = 800
    reentry_window_hours: float = 4.0
    min_embedding_magnitude: float = 0.1
    embedding_dimensionality: int = 512
    min_embedding_variance: float = 0.0
    duplicate_face_threshold: float = 0.88
    store_max_retries: int = 3
    store_retry_backoff_ms: int = 200

    @property
    def reentry_window(self) -> timedelta:
        return timedelta(hours=self.reentry_window_hours)

    @property
    def store_backoff_seconds(self) -> float:
        return self.store_retry_backoff_ms / 1000.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.max_retries),
            backoff_seconds=max(0, self.retry_backoff_ms) / 1000.0,
        )

    @classmethod
    def from_env(cls) -> "ThresholdPolicy":
        base = _unit(_float_env("CHECKIN_BASE_THRESHOLD", 0.60))
        return cls(
            base_threshold=base,
            high_threshold=max(base, _unit(_float_env("CHECKIN_HIGH_THRESHOLD", 0.75))),
            base_margin=_unit(_float_env("CHECKIN_BASE_MARGIN", 0.05)),
            high_margin=_unit(_float_env("CHECKIN_HIGH_MARGIN", 0.10)),
            max_retries=max(1, _int_env("CHECKIN_MAX_RETRIES", 2)),
            retry_backoff_ms=max(0, _int_env("CHECKIN_RETRY_BACKOFF_MS", 800)),
            reentry_window_hours=max(0.0, _float_env("CHECKIN_REENTRY_WINDOW_HOURS", 4.0)),
            min_embedding_magnitude=max(0.0, _float_env("CHECKIN_MIN_EMBEDDING_MAGNITUDE", 0.1)),
            embedding_dimensionality=max(1, _int_env("CHECKIN_EMBEDDING_DIM", 512)),
            min_embedding_variance=max(0.0, _float_env("CHECKIN_MIN_EMBEDDING_VARIANCE", 0.0)),
            duplicate_face_threshold=_unit(_float_env("CHECKIN_DUPLICATE_FACE_THRESHOLD", 0.88)),
            store_max_retries=max(1, _int_env("CHECKIN_STORE_MAX_RETRIES", 3)),
            store_retry_backoff_ms=max(0, _int_env("CHECKIN_STORE_RETRY_BACKOFF_MS", 200)),
        )
