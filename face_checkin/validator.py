from typing import Optional, Sequence, Union

import numpy as np

from .config import ThresholdPolicy
from .exceptions import InvalidEmbedding
from .types import ValidatedEmbedding


class EmbeddingValidator:
    """Quality gate run on captured candidates and on enrollment embeddings."""

    def __init__(self, policy: Optional[ThresholdPolicy] = None):
        self.policy = policy or ThresholdPolicy()

    def validate(self, embedding: Union[np.ndarray, Sequence[float], None]) -> ValidatedEmbedding:
        if embedding is None:
            raise InvalidEmbedding("Embedding is missing.", reason="empty")

        try:
            vector = np.array(embedding, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise InvalidEmbedding(f"Embedding is not numeric: {exc}", reason="corrupted") from exc

        if vector.size == 0:
            raise InvalidEmbedding("Embedding is empty.", reason="empty")
        if vector.ndim != 1:
            raise InvalidEmbedding(
                f"Embedding must be a flat vector, got shape {vector.shape}.",
                reason="dimension_mismatch",
            )
        if not np.isfinite(vector).all():
            raise InvalidEmbedding("Embedding contains NaN or infinite values.", reason="corrupted")

        magnitude = float(np.linalg.norm(vector))
        if magnitude < self.policy.min_embedding_magnitude:
            raise InvalidEmbedding(
                f"Embedding magnitude {magnitude:.4f} is below {self.policy.min_embedding_magnitude}.",
                reason="low_quality",
            )
        if self.policy.min_embedding_variance > 0.0:
            variance = float(np.var(vector / magnitude))
            if variance <= self.policy.min_embedding_variance:
                raise InvalidEmbedding(
                    f"Embedding variance {variance:.6f} is too low; the capture is likely blurred or dark.",
                    reason="low_quality",
                )

        if vector.size != self.policy.embedding_dimensionality:
            raise InvalidEmbedding(
                f"Expected {self.policy.embedding_dimensionality} dimensions, got {vector.size}.",
                reason="dimension_mismatch",
            )

        vector.setflags(write=False)
        return ValidatedEmbedding(
            vector=vector,
            magnitude=magnitude,
            quality_score=min(100.0, round(magnitude * 100.0)),
        )

    def is_valid(self, embedding: Union[np.ndarray, Sequence[float], None]) -> bool:
        try:
            self.validate(embedding)
        except InvalidEmbedding:
            return False
        return True
