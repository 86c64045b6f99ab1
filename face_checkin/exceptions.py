from typing import Any, Optional


class AttendanceError(Exception):
    """Base exception for the check-in system."""

    reason = "attendance_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.__class__.__name__, "reason": self.reason, "message": str(self)}


class CameraError(AttendanceError):
    """Raised when webcam access fails."""

    reason = "camera_error"


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""

    reason = "extraction_failed"


class NoFaceDetected(FaceEngineError):
    """No face found in the capture."""

    reason = "no_face_detected"


class ExtractionFailed(FaceEngineError):
    """The embedding model could not process the capture."""

    reason = "extraction_failed"


class InvalidEmbedding(AttendanceError):
    """Raised when an embedding fails the quality gate."""

    reason = "invalid_embedding"


class NoEnrolledIdentities(AttendanceError):
    """Nobody is enrolled yet."""

    reason = "no_enrolled_identities"


class NoConfidentMatch(AttendanceError):
    """The capture did not match any enrolled identity with enough confidence."""

    reason = "below_threshold"

    def __init__(self, message: str = "", reason: Optional[str] = None, result: Any = None):
        super().__init__(message, reason=reason)
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.result is not None:
            payload["score"] = self.result.score
            payload["margin"] = self.result.margin
        return payload


class DuplicateIdentity(AttendanceError):
    """Raised when an enrollment collides with an existing identity."""

    reason = "identity_exists"


class IdentityNotFound(AttendanceError):
    """Raised when an identity key is unknown."""

    reason = "identity_not_found"


class ConfirmationRequired(AttendanceError):
    """Raised when a destructive operation was not confirmed."""

    reason = "confirmation_required"


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""

    reason = "database_error"


class StoreUnavailable(DatabaseError):
    """Raised when the store cannot be reached; safe to retry."""

    reason = "store_unavailable"


class AppendConflict(DatabaseError):
    """Raised when another writer appended for the same identity first."""

    reason = "append_conflict"


class SessionBusy(AttendanceError):
    """Raised when a capture stream already has an active session."""

    reason = "session_busy"


class SessionCancelled(AttendanceError):
    """Raised when a session was cancelled before it persisted anything."""

    reason = "cancelled"
