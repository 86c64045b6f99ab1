import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union
from uuid import uuid4

from .config import RetryPolicy, ThresholdPolicy
from .exceptions import (
    AppendConflict,
    AttendanceError,
    CameraError,
    NoConfidentMatch,
    NoEnrolledIdentities,
    SessionBusy,
    SessionCancelled,
    StoreUnavailable,
)
from .logger import setup_logger
from .matcher import NO_ENROLLED_IDENTITIES, MatchDecisionEngine
from .state_machine import AttendanceStateMachine
from .types import (
    AttendanceEvent,
    EnrolledSet,
    EnrollmentStore,
    EventLog,
    Extractor,
    MatchResult,
    ValidatedEmbedding,
)
from .validator import EmbeddingValidator

T = TypeVar("T")
Capture = Union[bytes, Callable[[], bytes]]
DEFAULT_STREAM = "default"


class SessionState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    VALIDATING = "validating"
    MATCHING = "matching"
    DECIDING = "deciding"
    PERSISTING = "persisting"
    RECOGNIZED = "recognized"
    NOT_RECOGNIZED = "not_recognized"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {SessionState.RECOGNIZED, SessionState.NOT_RECOGNIZED, SessionState.CANCELLED, SessionState.FAILED}
)


@dataclass(frozen=True)
class RecognitionOutcome:
    session_id: str
    match: MatchResult
    event: Optional[AttendanceEvent] = None

    @property
    def recognized(self) -> bool:
        return self.event is not None

    @property
    def reason(self) -> str:
        return self.match.reason

    def raise_for_status(self) -> None:
        if self.recognized:
            return
        if self.match.reason == NO_ENROLLED_IDENTITIES:
            raise NoEnrolledIdentities("No enrolled identities. Enroll someone first.")
        raise NoConfidentMatch("Face not recognized.", reason=self.match.reason, result=self.match)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": "recognized" if self.recognized else "not_recognized",
            "match": self.match.to_dict(),
            "event": self.event.to_dict() if self.event is not None else None,
        }


class KeyedLock:
    """One mutex per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class RecognitionService:
    """Builds recognition sessions and owns what they share.

    Shared state is limited to the per-identity locks serializing the
    read-latest/decide/append sequence and the set of capture streams that
    currently have an active session.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        extractor: Extractor,
        policy: Optional[ThresholdPolicy] = None,
        event_log: Optional[EventLog] = None,
        engine: Optional[MatchDecisionEngine] = None,
        state_machine: Optional[AttendanceStateMachine] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or ThresholdPolicy()
        self.store = store
        self.event_log = event_log or store
        self.extractor = extractor
        self.validator = EmbeddingValidator(self.policy)
        self.engine = engine or MatchDecisionEngine(self.policy)
        self.state_machine = state_machine or AttendanceStateMachine.from_policy(self.policy)
        self.clock = clock
        self.sleep = sleep
        self.logger = setup_logger(self.__class__.__name__)

        self._identity_locks = KeyedLock()
        self._streams_lock = threading.Lock()
        self._active_streams: Dict[str, "RecognitionSession"] = {}

    def start_session(self, stream_id: str = DEFAULT_STREAM) -> "RecognitionSession":
        with self._streams_lock:
            if stream_id in self._active_streams:
                raise SessionBusy(f"Capture stream '{stream_id}' already has an active session.")
            session = RecognitionSession(self, stream_id)
            self._active_streams[stream_id] = session
        return session

    def recognize(
        self,
        capture: Capture,
        stream_id: str = DEFAULT_STREAM,
        capture_ref: Optional[str] = None,
    ) -> RecognitionOutcome:
        return self.start_session(stream_id).run(capture, capture_ref=capture_ref)

    def is_busy(self, stream_id: str = DEFAULT_STREAM) -> bool:
        with self._streams_lock:
            return stream_id in self._active_streams

    def active_sessions(self) -> List["RecognitionSession"]:
        with self._streams_lock:
            return list(self._active_streams.values())

    def _release(self, session: "RecognitionSession") -> None:
        with self._streams_lock:
            if self._active_streams.get(session.stream_id) is session:
                del self._active_streams[session.stream_id]

    def with_store_retry(self, operation: Callable[[], T], cancel_event: Optional[threading.Event] = None) -> T:
        attempts = self.policy.store_max_retries
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except StoreUnavailable as exc:
                if attempt >= attempts:
                    raise
                delay = self.policy.store_backoff_seconds * attempt
                self.logger.warning("Store unavailable (attempt %d/%d): %s", attempt, attempts, exc)
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise SessionCancelled("Recognition cancelled while waiting for the store.") from exc
                elif delay > 0:
                    self.sleep(delay)
        raise StoreUnavailable("Store retries exhausted.")

    def record_attendance(
        self,
        match: MatchResult,
        cancel_event: Optional[threading.Event] = None,
        capture_ref: Optional[str] = None,
        on_persist: Optional[Callable[[], None]] = None,
    ) -> AttendanceEvent:
        """Read the latest event, decide the transition and append, all under the identity's lock."""
        key = match.identity_key
        if key is None:
            raise AttendanceError("Cannot record attendance without an identity.", reason="no_identity")

        with self._identity_locks.hold(key):
            for attempt in range(1, self.policy.store_max_retries + 1):
                latest = self.with_store_retry(lambda: self.event_log.latest_for(key), cancel_event)
                event = self.state_machine.build_event(match, latest, now=self.clock(), capture_ref=capture_ref)

                if cancel_event is not None and cancel_event.is_set():
                    raise SessionCancelled("Recognition cancelled before persisting.")
                if on_persist is not None:
                    on_persist()

                expected_id = latest.event_id if latest is not None else None
                try:
                    # Past this point the append runs to completion or fails; it is never cancelled.
                    stored = self.with_store_retry(
                        lambda: self.event_log.append(event, expected_latest_id=expected_id, guarded=True)
                    )
                except AppendConflict as exc:
                    self.logger.warning("Append conflict for %s (attempt %d): %s", key, attempt, exc)
                    continue

                self.logger.info(
                    "Attendance %s recorded for %s (score=%.3f)",
                    stored.transition.value,
                    key,
                    stored.similarity,
                )
                return stored

        raise AppendConflict(f"Could not append attendance for {key}: concurrent writers kept winning.")


class RecognitionSession:
    """A single recognition attempt on one capture stream.

    Sessions are single-use: ``run`` may be called once. ``cancel`` can be
    called from another thread at any point; it takes effect unless the
    session has already started persisting.
    """

    def __init__(self, service: RecognitionService, stream_id: str = DEFAULT_STREAM):
        self.service = service
        self.stream_id = stream_id
        self.session_id = uuid4().hex
        self.logger = service.logger
        self.history: List[SessionState] = [SessionState.IDLE]
        self._cancel_event = threading.Event()
        self._state_lock = threading.Lock()
        self._started = False

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self.history[-1]

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()
        with self._state_lock:
            started = self._started
            if not started and self.history[-1] not in TERMINAL_STATES:
                self.history.append(SessionState.CANCELLED)
        # A session that never ran would otherwise hold its stream forever.
        if not started:
            self.service._release(self)

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            if self.history[-1] in TERMINAL_STATES:
                return
            self.history.append(state)

    def run(self, capture: Capture, capture_ref: Optional[str] = None) -> RecognitionOutcome:
        with self._state_lock:
            if self._started:
                raise AttendanceError("A recognition session can only run once.", reason="session_reused")
            self._started = True

        try:
            outcome = self._run(capture, capture_ref)
        except SessionCancelled:
            self._set_state(SessionState.CANCELLED)
            self.logger.info("Session %s cancelled", self.session_id)
            raise
        except Exception:
            self._set_state(SessionState.FAILED)
            raise
        finally:
            self.service._release(self)
        return outcome

    def _run(self, capture: Capture, capture_ref: Optional[str]) -> RecognitionOutcome:
        service = self.service
        if callable(capture):
            retry = service.policy.retry_policy()
        else:
            # A fixed image cannot get any better by retrying.
            retry = RetryPolicy(max_attempts=1, backoff_seconds=0.0)

        def acquire() -> ValidatedEmbedding:
            self._set_state(SessionState.CAPTURING)
            image_bytes = capture() if callable(capture) else capture
            if not image_bytes:
                raise CameraError("Capture returned no image.")
            embedding = service.extractor.extract(image_bytes)
            self._set_state(SessionState.VALIDATING)
            return service.validator.validate(embedding)

        def load_enrolled() -> EnrolledSet:
            self._set_state(SessionState.MATCHING)
            return service.with_store_retry(service.store.list_enrolled, self._cancel_event)

        match = service.engine.decide_with_retry(
            acquire,
            load_enrolled,
            retry=retry,
            cancel_event=self._cancel_event,
            sleep=service.sleep,
        )
        self._set_state(SessionState.DECIDING)

        if not match.matched:
            self.logger.info(
                "Session %s: not recognized (%s, score=%.3f, margin=%.3f, attempts=%d)",
                self.session_id,
                match.reason,
                match.score,
                match.margin,
                match.attempts,
            )
            self._set_state(SessionState.NOT_RECOGNIZED)
            return RecognitionOutcome(session_id=self.session_id, match=match)

        event = service.record_attendance(
            match,
            cancel_event=self._cancel_event,
            capture_ref=capture_ref,
            on_persist=lambda: self._set_state(SessionState.PERSISTING),
        )
        self._set_state(SessionState.RECOGNIZED)
        return RecognitionOutcome(session_id=self.session_id, match=match, event=event)
