"""Cosine similarity clamped into [0, 1]."""

from typing import Optional, Sequence, Union

import numpy as np

VectorLike = Union[np.ndarray, Sequence[float]]


def _as_vector(values: Optional[VectorLike]) -> Optional[np.ndarray]:
    if values is None:
        return None
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        return None
    return vector


def cosine_similarity(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """Score two embeddings.

    Returns 0.0 instead of raising when the inputs cannot be compared
    (missing, different lengths, zero magnitude). Components that are not
    finite in either vector are left out of the sums.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va is None or vb is None or va.shape != vb.shape:
        return 0.0

    finite = np.isfinite(va) & np.isfinite(vb)
    if not finite.all():
        va = va[finite]
        vb = vb[finite]

    norm_a = float(np.sqrt(np.dot(va, va)))
    norm_b = float(np.sqrt(np.dot(vb, vb)))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(va, vb)) / (norm_a * norm_b)
    if not np.isfinite(similarity):
        return 0.0
    return min(1.0, max(0.0, similarity))


def score_against(query: np.ndarray, references: np.ndarray) -> np.ndarray:
    """Score one query against every row of a reference matrix.

    Rows must already be finite and non-zero; the result is clamped the
    same way as :func:`cosine_similarity`.
    """
    if references.size == 0:
        return np.zeros(0, dtype=np.float64)

    query = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(references, dtype=np.float64)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype=np.float64)

    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms = np.clip(row_norms, a_min=1e-12, a_max=None)
    scores = (matrix @ query) / (row_norms * query_norm)
    return np.clip(scores, 0.0, 1.0)
