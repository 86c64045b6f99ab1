from .attendance_service import AttendanceService
from .config import RetryPolicy, ThresholdPolicy
from .database import AttendanceDatabase
from .matcher import MatchDecisionEngine
from .recognition_service import RecognitionOutcome, RecognitionService, RecognitionSession, SessionState
from .registration_service import EnrollmentRegistrar
from .state_machine import AttendanceStateMachine
from .types import AttendanceEvent, ConfidenceTier, EnrolledSet, Identity, MatchResult, Transition
from .validator import EmbeddingValidator

__all__ = [
    "AttendanceDatabase",
    "AttendanceEvent",
    "AttendanceService",
    "AttendanceStateMachine",
    "ConfidenceTier",
    "EmbeddingValidator",
    "EnrolledSet",
    "EnrollmentRegistrar",
    "Identity",
    "MatchDecisionEngine",
    "MatchResult",
    "RecognitionOutcome",
    "RecognitionService",
    "RecognitionSession",
    "RetryPolicy",
    "SessionState",
    "ThresholdPolicy",
    "Transition",
]
