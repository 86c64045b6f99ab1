from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest

from face_checkin.exceptions import (
    AppendConflict,
    AttendanceError,
    CameraError,
    NoConfidentMatch,
    NoEnrolledIdentities,
    SessionBusy,
    SessionCancelled,
    StoreUnavailable,
)
from face_checkin.recognition_service import RecognitionService, SessionState
from face_checkin.types import ConfidenceTier, Transition

from conftest import basis, query_with


class FlakyLog:
    """Event log that fails the first calls of chosen operations."""

    def __init__(self, db, fail_latest=0, conflicts=0):
        self.db = db
        self.fail_latest = fail_latest
        self.conflicts = conflicts

    def latest_for(self, identity_key):
        if self.fail_latest > 0:
            self.fail_latest -= 1
            raise StoreUnavailable("database is locked")
        return self.db.latest_for(identity_key)

    def append(self, event, expected_latest_id=None, guarded=False):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise AppendConflict("another writer won")
        return self.db.append(event, expected_latest_id=expected_latest_id, guarded=guarded)


class MemoryLog:
    """In-memory event log with the same compare-and-append contract as the database."""

    def __init__(self):
        self.events = []

    def append(self, event, expected_latest_id=None, guarded=False):
        latest = self.latest_for(event.identity_key)
        if guarded and (latest.event_id if latest else None) != expected_latest_id:
            raise AppendConflict("latest event moved")
        stored = replace(event, event_id=len(self.events) + 1)
        self.events.append(stored)
        return stored

    def latest_for(self, identity_key):
        matching = [event for event in self.events if event.identity_key == identity_key]
        return matching[-1] if matching else None

    def list_by_date_range(self, start, end):
        return [event for event in self.events if start <= event.timestamp < end]


def test_recognition_alternates_entry_and_exit(service, alice, clock, db):
    first = service.recognize(alice)
    clock.advance(hours=1)
    second = service.recognize(alice)
    clock.advance(hours=6)
    third = service.recognize(alice)

    assert first.recognized
    assert first.match.tier is ConfidenceTier.HIGH
    assert [o.event.transition for o in (first, second, third)] == [
        Transition.ENTRY,
        Transition.EXIT,
        Transition.ENTRY,
    ]
    assert len(db.events_for("alice@example.com")) == 3


def test_session_walks_through_lifecycle(service, alice):
    session = service.start_session("cam-0")
    outcome = session.run(alice, capture_ref="frame-1")

    assert session.history == [
        SessionState.IDLE,
        SessionState.CAPTURING,
        SessionState.VALIDATING,
        SessionState.MATCHING,
        SessionState.DECIDING,
        SessionState.PERSISTING,
        SessionState.RECOGNIZED,
    ]
    assert outcome.event.capture_ref == "frame-1"
    assert outcome.to_dict()["status"] == "recognized"


def test_unrecognized_face_writes_nothing(service, alice, extractor, db):
    stranger = extractor.add(b"stranger", query_with({1: 0.9}))

    outcome = service.recognize(stranger)

    assert not outcome.recognized
    assert outcome.reason == "below_threshold"
    assert db.events_for("alice@example.com") == []
    with pytest.raises(NoConfidentMatch) as excinfo:
        outcome.raise_for_status()
    assert excinfo.value.to_dict()["score"] == pytest.approx(0.0, abs=1e-6)


def test_no_enrolled_identities(service, extractor):
    frame = extractor.add(b"someone", basis(0))

    outcome = service.recognize(frame)

    assert outcome.reason == "no_enrolled_identities"
    with pytest.raises(NoEnrolledIdentities):
        outcome.raise_for_status()


def test_fixed_image_without_face_is_not_retried(service, alice, extractor):
    outcome = service.recognize(b"blank")

    assert outcome.reason == "no_face_detected"
    assert outcome.match.attempts == 1
    assert extractor.calls == 1


def test_live_capture_is_retried_after_quality_failure(service, alice):
    frames = iter([b"blurred", alice])

    outcome = service.recognize(lambda: next(frames))

    assert outcome.recognized
    assert outcome.match.attempts == 2


def test_empty_capture_fails_the_session(service, alice):
    session = service.start_session()

    with pytest.raises(CameraError):
        session.run(lambda: b"")

    assert session.state is SessionState.FAILED
    assert not service.is_busy()


def test_cancel_before_run_discards_the_session(service, alice, db):
    session = service.start_session()
    session.cancel()

    with pytest.raises(SessionCancelled):
        session.run(alice)

    assert session.state is SessionState.CANCELLED
    assert db.events_for("alice@example.com") == []
    assert not service.is_busy()


def test_cancel_during_capture_persists_nothing(service, alice, db):
    session = service.start_session()

    def capture():
        session.cancel()
        return alice

    with pytest.raises(SessionCancelled):
        session.run(capture)

    assert session.state is SessionState.CANCELLED
    assert SessionState.PERSISTING not in session.history
    assert db.latest_for("alice@example.com") is None


def test_second_session_on_busy_stream_is_rejected(service, alice):
    first = service.start_session("cam-0")

    with pytest.raises(SessionBusy):
        service.start_session("cam-0")
    other = service.start_session("cam-1")

    first.run(alice)
    other.cancel()
    with pytest.raises(SessionCancelled):
        other.run(alice)
    assert service.start_session("cam-0").stream_id == "cam-0"


def test_sessions_are_single_use(service, alice):
    session = service.start_session()
    session.run(alice)

    with pytest.raises(AttendanceError) as excinfo:
        session.run(alice)
    assert excinfo.value.reason == "session_reused"


def test_store_outage_is_retried(db, extractor, policy, clock, alice):
    service = RecognitionService(db, extractor, policy=policy, event_log=FlakyLog(db, fail_latest=2), clock=clock)

    outcome = service.recognize(alice)

    assert outcome.event.transition is Transition.ENTRY


def test_store_outage_beyond_budget_fails(db, extractor, policy, clock, alice):
    service = RecognitionService(db, extractor, policy=policy, event_log=FlakyLog(db, fail_latest=10), clock=clock)

    with pytest.raises(StoreUnavailable):
        service.recognize(alice)
    assert not service.is_busy()


def test_lost_append_race_is_redecided(db, extractor, policy, clock, alice):
    service = RecognitionService(db, extractor, policy=policy, event_log=FlakyLog(db, conflicts=1), clock=clock)

    outcome = service.recognize(alice)

    assert outcome.event.event_id is not None
    assert len(db.events_for("alice@example.com")) == 1


def test_concurrent_sessions_keep_strict_alternation(db, extractor, policy, alice):
    service = RecognitionService(db, extractor, policy=policy)

    def run(index):
        return service.recognize(alice, stream_id=f"cam-{index}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(run, range(16)))

    assert all(outcome.recognized for outcome in outcomes)
    events = db.events_for("alice@example.com")
    assert len(events) == 16
    transitions = [event.transition for event in events]
    assert transitions == [Transition.ENTRY, Transition.EXIT] * 8
    timestamps = [event.timestamp for event in events]
    assert all(later - earlier >= timedelta(microseconds=1) for earlier, later in zip(timestamps, timestamps[1:]))


def test_cancelling_an_unstarted_session_frees_the_stream(service, alice, db):
    abandoned = service.start_session("cam-0")
    abandoned.cancel()

    assert not service.is_busy("cam-0")
    assert abandoned.state is SessionState.CANCELLED

    replacement = service.start_session("cam-0")
    with pytest.raises(SessionCancelled):
        abandoned.run(alice)
    assert service.is_busy("cam-0")

    outcome = replacement.run(alice)
    assert outcome.event.transition is Transition.ENTRY
    assert len(db.events_for("alice@example.com")) == 1
    assert not service.is_busy("cam-0")


def test_any_event_log_implementation_can_back_the_service(db, extractor, policy, clock, alice):
    log = MemoryLog()
    service = RecognitionService(db, extractor, policy=policy, event_log=log, clock=clock)

    first = service.recognize(alice)
    clock.advance(minutes=30)
    second = service.recognize(alice)

    assert [event.transition for event in log.events] == [Transition.ENTRY, Transition.EXIT]
    assert second.event.event_id == 2
    assert first.event.timestamp < second.event.timestamp
    assert db.events_for("alice@example.com") == []
