import base64
import binascii
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from typing import Callable, List, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .attendance_service import AttendanceService
from .config import AUTO_SCAN_ENABLED, CAMERA_INDEX, DB_PATH, ThresholdPolicy
from .database import AttendanceDatabase
from .exceptions import (
    AppendConflict,
    AttendanceError,
    CameraError,
    ConfirmationRequired,
    DuplicateIdentity,
    FaceEngineError,
    IdentityNotFound,
    InvalidEmbedding,
    NoConfidentMatch,
    NoEnrolledIdentities,
    SessionBusy,
    SessionCancelled,
    StoreUnavailable,
)
from .logger import setup_logger
from .recognition_service import RecognitionService
from .registration_service import EnrollmentRegistrar
from .scanner import AutoScanner

logger = setup_logger("WebApp")

# First match wins, so subclasses come before their bases.
STATUS_BY_ERROR = (
    (IdentityNotFound, 404),
    (DuplicateIdentity, 409),
    (SessionBusy, 409),
    (AppendConflict, 409),
    (NoEnrolledIdentities, 409),
    (SessionCancelled, 409),
    (StoreUnavailable, 503),
    (CameraError, 503),
    (InvalidEmbedding, 422),
    (NoConfidentMatch, 422),
    (FaceEngineError, 422),
    (ConfirmationRequired, 400),
)


def status_for(exc: AttendanceError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


class RecognizeBody(BaseModel):
    image_b64: str
    # None gives each request a stream of its own.
    stream_id: Optional[str] = None
    capture_ref: Optional[str] = None


class AddIdentityBody(BaseModel):
    identity_key: str
    display_name: str


class EnrollBody(BaseModel):
    embedding: Optional[List[float]] = None
    image_b64: Optional[str] = None
    display_name: Optional[str] = None
    reenroll: bool = False


def _decode_image(image_b64: str) -> bytes:
    # Browsers send data URLs; accept both forms.
    payload = image_b64.split(",", 1)[1] if image_b64.startswith("data:") else image_b64
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidEmbedding("image_b64 is not valid base64.", reason="corrupted") from exc


def create_web_app(
    service: RecognitionService,
    registrar: EnrollmentRegistrar,
    reports: AttendanceService,
    scanner: Optional[AutoScanner] = None,
    on_shutdown: Optional[Callable[[], None]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if scanner is not None:
            scanner.start()
        try:
            yield
        finally:
            if scanner is not None:
                scanner.stop()
            if on_shutdown is not None:
                on_shutdown()

    app = FastAPI(title="Face Check-in", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(AttendanceError)
    async def _attendance_error(request: Request, exc: AttendanceError):
        status = status_for(exc)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/api/health")
    def health():
        return {
            "ok": True,
            "active_sessions": len(service.active_sessions()),
            "auto_scan": scanner.running if scanner is not None else False,
        }

    @app.post("/api/recognize")
    def recognize(payload: RecognizeBody):
        image_bytes = _decode_image(payload.image_b64)
        stream_id = payload.stream_id or f"upload-{uuid4().hex}"
        outcome = service.recognize(image_bytes, stream_id=stream_id, capture_ref=payload.capture_ref)
        outcome.raise_for_status()
        return outcome.to_dict()

    @app.get("/api/identities")
    def list_identities():
        return [asdict(profile) for profile in registrar.db.list_identities()]

    @app.post("/api/identities", status_code=201)
    def add_identity(payload: AddIdentityBody):
        identity = registrar.add_identity(payload.identity_key, payload.display_name)
        return {"identity_key": identity.identity_key, "display_name": identity.display_name, "enrolled": False}

    @app.post("/api/identities/{identity_key}/enroll")
    def enroll(identity_key: str, payload: EnrollBody):
        if payload.embedding is not None:
            identity = registrar.register(
                identity_key,
                payload.embedding,
                is_reenrollment=payload.reenroll,
                display_name=payload.display_name,
            )
        elif payload.image_b64 is not None:
            identity = registrar.register_image(
                identity_key,
                _decode_image(payload.image_b64),
                service.extractor,
                is_reenrollment=payload.reenroll,
                display_name=payload.display_name,
            )
        else:
            raise InvalidEmbedding("Provide either embedding or image_b64.", reason="empty")
        return {
            "identity_key": identity.identity_key,
            "display_name": identity.display_name,
            "enrolled": True,
            "quality_score": identity.quality_score,
        }

    @app.delete("/api/identities/{identity_key}")
    def delete_identity(identity_key: str, confirm: bool = False):
        registrar.remove(identity_key, confirm=confirm)
        return {"ok": True, "identity_key": identity_key.strip().lower()}

    @app.get("/api/attendance")
    def attendance(start: Optional[date] = None, end: Optional[date] = None):
        today = date.today()
        events = reports.events_between(start or today, end or start or today)
        return [event.to_dict() for event in events]

    @app.get("/api/stats")
    def stats(day: Optional[date] = None):
        return reports.daily_summary(day)

    @app.get("/api/present")
    def present():
        return [event.to_dict() for event in reports.currently_present()]

    return app


def build_web_app(camera_index: Optional[int] = None, auto_scan: bool = AUTO_SCAN_ENABLED) -> FastAPI:
    """Wire the production app: sqlite store, face models and optionally the webcam scanner."""
    from .camera import CameraStream
    from .face_engine import load_extractor

    policy = ThresholdPolicy.from_env()
    db = AttendanceDatabase(DB_PATH)
    service = RecognitionService(db, load_extractor(), policy=policy)
    registrar = EnrollmentRegistrar(db, policy=policy)
    reports = AttendanceService(db, policy=policy)

    scanner = None
    camera = None
    if auto_scan:
        camera = CameraStream(CAMERA_INDEX if camera_index is None else int(camera_index))
        try:
            camera.open()
        except CameraError as exc:
            logger.warning("Auto scan disabled: %s", exc)
        else:
            scanner = AutoScanner(service, camera.capture_jpeg, stream_id=camera.stream_id)

    return create_web_app(
        service,
        registrar,
        reports,
        scanner=scanner,
        on_shutdown=camera.close if scanner is not None else None,
    )
