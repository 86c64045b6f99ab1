import numpy as np
import pytest

from face_checkin.similarity import cosine_similarity, score_against


def test_identical_vectors_score_one():
    assert cosine_similarity([0.2, 0.4, 0.1], [0.2, 0.4, 0.1]) == pytest.approx(1.0)


def test_orthogonal_and_opposite_vectors_score_zero():
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0


def test_scale_does_not_matter():
    assert cosine_similarity([1.0, 2.0, 3.0], [10.0, 20.0, 30.0]) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "a, b",
    [
        ([1.0, 2.0], [1.0, 2.0, 3.0]),
        ([0.0, 0.0], [1.0, 2.0]),
        (None, [1.0]),
        ([], []),
    ],
)
def test_incomparable_inputs_score_zero(a, b):
    assert cosine_similarity(a, b) == 0.0


def test_non_finite_components_are_ignored():
    assert cosine_similarity([1.0, float("nan")], [1.0, 5.0]) == pytest.approx(1.0)


def test_score_against_matches_pairwise_scores():
    rng = np.random.default_rng(7)
    query = rng.normal(size=16)
    references = rng.normal(size=(5, 16))

    scores = score_against(query, references)

    expected = [cosine_similarity(query, row) for row in references]
    assert scores == pytest.approx(expected)
    assert ((scores >= 0.0) & (scores <= 1.0)).all()


def test_score_against_empty_matrix():
    assert score_against(np.ones(4), np.zeros((0, 4))).size == 0


def test_similarity_is_symmetric_and_bounded():
    rng = np.random.default_rng(11)
    pairs = [(rng.normal(size=12), rng.normal(size=12)) for _ in range(20)]
    pairs += [
        (rng.normal(size=12), rng.normal(size=5)),
        (None, rng.normal(size=4)),
        (np.zeros(6), rng.normal(size=6)),
        ([1.0, float("inf"), 2.0], [0.5, 1.0, 3.0]),
    ]

    for a, b in pairs:
        forward = cosine_similarity(a, b)
        backward = cosine_similarity(b, a)
        assert forward == pytest.approx(backward, abs=1e-12)
        assert 0.0 <= forward <= 1.0
