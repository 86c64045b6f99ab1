import threading
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np

from .config import ThresholdPolicy
from .database import AttendanceDatabase
from .exceptions import (
    AttendanceError,
    ConfirmationRequired,
    DuplicateIdentity,
    IdentityNotFound,
    InvalidEmbedding,
)
from .logger import setup_logger
from .similarity import score_against
from .types import Extractor, Identity, ValidatedEmbedding
from .validator import EmbeddingValidator


def normalize_identity_key(identity_key: str) -> str:
    key = (identity_key or "").strip().lower()
    if not key:
        raise AttendanceError("identity_key cannot be empty.", reason="invalid_identity_key")
    return key


class EnrollmentRegistrar:
    """Admits identities and their reference embeddings into the enrolled set."""

    def __init__(
        self,
        db: AttendanceDatabase,
        policy: Optional[ThresholdPolicy] = None,
        validator: Optional[EmbeddingValidator] = None,
    ):
        self.db = db
        self.policy = policy or ThresholdPolicy()
        self.validator = validator or EmbeddingValidator(self.policy)
        self.logger = setup_logger(self.__class__.__name__)
        # Serializes check-then-write so two enrollments of one key cannot both pass.
        self._lock = threading.Lock()

    def add_identity(self, identity_key: str, display_name: str) -> Identity:
        """Create a person with no reference embedding yet."""
        key = normalize_identity_key(identity_key)
        name = (display_name or "").strip() or key
        with self._lock:
            identity = self.db.create_identity(key, name)
        self.logger.info("Identity %s added without enrollment", key)
        return identity

    def register(
        self,
        identity_key: str,
        embedding: Sequence[float],
        is_reenrollment: bool = False,
        display_name: Optional[str] = None,
    ) -> Identity:
        key = normalize_identity_key(identity_key)
        validated = self.validator.validate(embedding)

        with self._lock:
            existing = self.db.get(key)
            if existing is not None and existing.is_enrolled and not is_reenrollment:
                raise DuplicateIdentity(f"Identity {key} is already enrolled.")
            if existing is None and is_reenrollment:
                raise IdentityNotFound(f"Cannot re-enroll unknown identity {key}.")

            self._validate_face_uniqueness(validated, key)

            name = (display_name or "").strip() or (existing.display_name if existing is not None else key)
            identity = Identity(
                identity_key=key,
                display_name=name,
                embedding=np.asarray(validated.vector, dtype=np.float32),
                enrolled_at=datetime.now(),
                quality_score=validated.quality_score,
                created_at=existing.created_at if existing is not None else None,
            )
            saved = self.db.upsert(identity, allow_replace=is_reenrollment)

        action = "re-enrolled" if existing is not None and existing.is_enrolled else "enrolled"
        self.logger.info("Identity %s %s (quality=%.0f)", key, action, validated.quality_score)
        return saved

    def register_samples(
        self,
        identity_key: str,
        embeddings: Sequence[Sequence[float]],
        is_reenrollment: bool = False,
        display_name: Optional[str] = None,
    ) -> Identity:
        """Enroll from several captures by averaging their normalized embeddings."""
        valid: List[ValidatedEmbedding] = []
        for sample in embeddings:
            try:
                valid.append(self.validator.validate(sample))
            except InvalidEmbedding as exc:
                self.logger.info("Skipping enrollment sample for %s: %s", identity_key, exc.reason)

        if not valid:
            raise InvalidEmbedding("No usable enrollment samples.", reason="low_quality")

        average = self._average_encoding([sample.vector for sample in valid])
        return self.register(identity_key, average, is_reenrollment=is_reenrollment, display_name=display_name)

    def register_image(
        self,
        identity_key: str,
        image_bytes: bytes,
        extractor: Extractor,
        is_reenrollment: bool = False,
        display_name: Optional[str] = None,
    ) -> Identity:
        embedding = extractor.extract(image_bytes)
        return self.register(identity_key, embedding, is_reenrollment=is_reenrollment, display_name=display_name)

    def remove(self, identity_key: str, confirm: bool = False) -> None:
        """Delete an identity and, with it, every attendance event it owns."""
        key = normalize_identity_key(identity_key)
        if not confirm:
            raise ConfirmationRequired(
                f"Deleting {key} also deletes its attendance history; pass confirm=True."
            )
        with self._lock:
            removed = self.db.delete(key)
        if not removed:
            raise IdentityNotFound(f"Identity {key} not found.")
        self.logger.info("Identity %s deleted with its attendance events", key)

    @staticmethod
    def _average_encoding(vectors: List[np.ndarray]) -> np.ndarray:
        matrix = np.vstack(vectors).astype(np.float64)
        norms = np.clip(np.linalg.norm(matrix, axis=1, keepdims=True), a_min=1e-12, a_max=None)
        vector = (matrix / norms).mean(axis=0)
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            raise InvalidEmbedding("Unable to normalize average encoding.", reason="low_quality")
        return vector / norm

    def _validate_face_uniqueness(self, candidate: ValidatedEmbedding, identity_key: str) -> None:
        threshold = self.policy.duplicate_face_threshold
        if threshold <= 0.0:
            return

        others = [
            identity
            for identity in self.db.list_enrolled()
            if identity.identity_key != identity_key
            and identity.embedding is not None
            and identity.embedding.shape == candidate.vector.shape
        ]
        if not others:
            return

        scores = score_against(candidate.vector, np.vstack([item.embedding for item in others]))
        idx = int(np.argmax(scores))
        if float(scores[idx]) >= threshold:
            match = others[idx]
            raise DuplicateIdentity(
                f"Captured face is too similar to existing identity '{match.display_name}' "
                f"({match.identity_key}). Use a different person or capture a cleaner sample.",
                reason="face_already_enrolled",
            )
