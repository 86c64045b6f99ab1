import numpy as np
import pytest

from face_checkin.exceptions import (
    AttendanceError,
    ConfirmationRequired,
    DuplicateIdentity,
    IdentityNotFound,
    InvalidEmbedding,
    NoFaceDetected,
)
from face_checkin.database import AttendanceDatabase
from face_checkin.matcher import MatchDecisionEngine
from face_checkin.registration_service import EnrollmentRegistrar, normalize_identity_key
from face_checkin.types import ConfidenceTier
from face_checkin.validator import EmbeddingValidator

from conftest import basis, query_with


def test_identity_keys_are_normalized():
    assert normalize_identity_key("  Alice@Example.COM ") == "alice@example.com"
    with pytest.raises(AttendanceError) as excinfo:
        normalize_identity_key("   ")
    assert excinfo.value.reason == "invalid_identity_key"


def test_register_new_identity(registrar, db):
    identity = registrar.register("Alice@Example.com", basis(0), display_name="Alice")

    assert identity.identity_key == "alice@example.com"
    assert identity.display_name == "Alice"
    assert identity.is_enrolled
    assert identity.quality_score == 100
    assert len(db.list_enrolled()) == 1


def test_second_enrollment_without_flag_is_rejected(registrar, db):
    registrar.register("alice", basis(0))

    with pytest.raises(DuplicateIdentity) as excinfo:
        registrar.register("alice", basis(1))

    assert excinfo.value.reason == "identity_exists"
    assert np.array_equal(db.get("alice").embedding, basis(0).astype(np.float32))


def test_reenrollment_replaces_reference(registrar, db, policy):
    registrar.register("alice", basis(0), display_name="Alice")
    registrar.register("alice", basis(2), is_reenrollment=True)

    stored = db.get("alice")
    assert stored.display_name == "Alice"
    assert np.array_equal(stored.embedding, basis(2).astype(np.float32))

    candidate = EmbeddingValidator(policy).validate(query_with({2: 0.9}))
    engine = MatchDecisionEngine(policy)
    result = engine.decide(candidate, db.list_enrolled())
    assert result.identity_key == "alice"

    old_face = EmbeddingValidator(policy).validate(query_with({0: 0.9}))
    stale = engine.decide(old_face, db.list_enrolled())
    assert stale.tier is ConfidenceTier.NONE
    assert stale.reason == "below_threshold"
    assert stale.score == pytest.approx(0.0, abs=1e-6)


def test_enrollment_from_another_process_is_not_overwritten(registrar, db, policy, monkeypatch):
    registrar.register("alice", basis(0))

    other_db = AttendanceDatabase(db.db_path)
    # The other writer read the key before alice was enrolled.
    monkeypatch.setattr(other_db, "get", lambda key: None)
    other = EnrollmentRegistrar(other_db, policy=policy)

    with pytest.raises(DuplicateIdentity):
        other.register("alice", basis(1))

    assert np.array_equal(db.get("alice").embedding, basis(0).astype(np.float32))


def test_reenrolling_unknown_identity_fails(registrar):
    with pytest.raises(IdentityNotFound):
        registrar.register("ghost", basis(0), is_reenrollment=True)


def test_invalid_embedding_never_reaches_the_store(registrar, db):
    with pytest.raises(InvalidEmbedding):
        registrar.register("alice", [0.0] * 8)

    assert db.get("alice") is None


def test_pending_identity_can_be_enrolled(registrar, db):
    registrar.add_identity("Carol@Example.com", "Carol")

    identity = registrar.register("carol@example.com", basis(4))

    assert identity.display_name == "Carol"
    assert db.get("carol@example.com").is_enrolled


def test_add_identity_twice_is_duplicate(registrar):
    registrar.add_identity("carol", "Carol")
    with pytest.raises(DuplicateIdentity):
        registrar.add_identity("CAROL", "Carol")


def test_same_face_under_new_key_is_rejected(registrar, db):
    registrar.register("alice", basis(0))

    with pytest.raises(DuplicateIdentity) as excinfo:
        registrar.register("alice-again", query_with({0: 0.95}))

    assert excinfo.value.reason == "face_already_enrolled"
    assert db.get("alice-again") is None


def test_register_samples_averages_usable_samples(registrar, db):
    samples = [basis(0) * 2.0, basis(1), [float("nan")] * 8]

    registrar.register_samples("alice", samples)

    expected = np.array([1.0, 1.0, 0, 0, 0, 0, 0, 0]) / np.sqrt(2.0)
    assert db.get("alice").embedding == pytest.approx(expected, abs=1e-6)


def test_register_samples_needs_one_usable_sample(registrar):
    with pytest.raises(InvalidEmbedding):
        registrar.register_samples("alice", [[0.0] * 8, None])


def test_register_image_uses_the_extractor(registrar, extractor):
    extractor.add(b"alice.jpg", basis(5))

    identity = registrar.register_image("alice", b"alice.jpg", extractor)

    assert identity.is_enrolled
    with pytest.raises(NoFaceDetected):
        registrar.register_image("bob", b"blank.jpg", extractor)


def test_remove_requires_confirmation(registrar, db):
    registrar.register("alice", basis(0))

    with pytest.raises(ConfirmationRequired):
        registrar.remove("alice")
    assert db.get("alice") is not None

    registrar.remove(" ALICE ", confirm=True)
    assert db.get("alice") is None

    with pytest.raises(IdentityNotFound):
        registrar.remove("alice", confirm=True)
