"""Scores a candidate against the enrolled set and classifies the outcome."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Callable, List, Optional

import numpy as np

from .config import RetryPolicy, ThresholdPolicy
from .exceptions import InvalidEmbedding, NoFaceDetected, SessionCancelled
from .logger import setup_logger
from .similarity import score_against
from .types import ConfidenceTier, EnrolledSet, Identity, MatchCandidate, MatchResult, ValidatedEmbedding

NO_ENROLLED_IDENTITIES = "no_enrolled_identities"
BELOW_THRESHOLD = "below_threshold"
AMBIGUOUS_MARGIN = "ambiguous_margin"
MATCHED = "matched"


def _usable_reference(identity: Identity, dimension: int) -> bool:
    vector = identity.embedding
    if vector is None or vector.ndim != 1 or vector.shape[0] != dimension:
        return False
    if not np.isfinite(vector).all():
        return False
    return float(np.linalg.norm(vector)) > 0.0


def _none_result(reason: str, score: float = 0.0, margin: float = 0.0, attempts: int = 1) -> MatchResult:
    return MatchResult(
        identity=None,
        score=score,
        tier=ConfidenceTier.NONE,
        margin=margin,
        reason=reason,
        attempts=attempts,
    )


class MatchDecisionEngine:
    def __init__(self, policy: Optional[ThresholdPolicy] = None):
        self.policy = policy or ThresholdPolicy()
        self.logger = setup_logger(self.__class__.__name__)

    def rank(self, candidate: ValidatedEmbedding, enrolled: EnrolledSet) -> List[MatchCandidate]:
        """Every usable identity with its score, best first."""
        identities = [item for item in enrolled if _usable_reference(item, candidate.dimension)]
        if not identities:
            return []

        matrix = np.vstack([item.embedding for item in identities]).astype(np.float64)
        scores = score_against(candidate.vector, matrix)
        ranked = [MatchCandidate(identity=item, score=float(score)) for item, score in zip(identities, scores)]
        ranked.sort(key=lambda match: match.score, reverse=True)
        return ranked

    def decide(
        self,
        candidate: ValidatedEmbedding,
        enrolled: EnrolledSet,
        policy: Optional[ThresholdPolicy] = None,
    ) -> MatchResult:
        policy = policy or self.policy
        ranked = self.rank(candidate, enrolled)
        if not ranked:
            return _none_result(NO_ENROLLED_IDENTITIES)

        top1 = ranked[0]
        top2 = ranked[1] if len(ranked) > 1 else None
        margin = top1.score - (top2.score if top2 is not None else 0.0)

        if top1.score >= policy.high_threshold and margin >= policy.high_margin:
            tier = ConfidenceTier.HIGH
        elif top1.score >= policy.base_threshold and margin >= policy.base_margin:
            tier = ConfidenceTier.MEDIUM
        else:
            tier = ConfidenceTier.NONE

        if tier is ConfidenceTier.NONE:
            reason = BELOW_THRESHOLD if top1.score < policy.base_threshold else AMBIGUOUS_MARGIN
            return MatchResult(
                identity=None,
                score=top1.score,
                tier=tier,
                margin=margin,
                reason=reason,
                runner_up=top2,
            )

        return MatchResult(
            identity=top1.identity,
            score=top1.score,
            tier=tier,
            margin=margin,
            reason=MATCHED,
            runner_up=top2,
        )

    def decide_with_retry(
        self,
        acquire: Callable[[], ValidatedEmbedding],
        load_enrolled: Callable[[], EnrolledSet],
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> MatchResult:
        """Run up to ``retry.max_attempts`` decisions on freshly acquired candidates.

        Only quality failures (no face, invalid embedding) are retried; a
        valid candidate that matches nobody is final. The enrolled set is
        reloaded for every attempt. When attempts run out the best
        ``none`` result seen so far is returned.
        """
        retry = retry or self.policy.retry_policy()
        best: Optional[MatchResult] = None
        attempt = 0

        while True:
            attempt += 1
            self._raise_if_cancelled(cancel_event)
            try:
                candidate = acquire()
            except (NoFaceDetected, InvalidEmbedding) as exc:
                failure = _none_result(exc.reason, attempts=attempt)
                self.logger.info("Attempt %d/%d rejected: %s", attempt, retry.max_attempts, exc.reason)
            else:
                self._raise_if_cancelled(cancel_event)
                enrolled = load_enrolled()
                result = self.decide(candidate, enrolled)
                result = _with_attempts(result, attempt)
                if result.matched:
                    return result
                if result.reason == NO_ENROLLED_IDENTITIES:
                    return result
                failure = result
                self.logger.info(
                    "Attempt %d/%d: no confident match (%s, score=%.3f, margin=%.3f)",
                    attempt,
                    retry.max_attempts,
                    result.reason,
                    result.score,
                    result.margin,
                )

            best = _better_of(best, failure)
            if not retry.should_retry(failure.reason, attempt):
                return _with_attempts(best, attempt)

            self._wait(retry.backoff_seconds, cancel_event, sleep)

    @staticmethod
    def _raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelled("Recognition cancelled.")

    @staticmethod
    def _wait(
        seconds: float,
        cancel_event: Optional[threading.Event],
        sleep: Callable[[float], None],
    ) -> None:
        if seconds <= 0:
            return
        if cancel_event is not None:
            if cancel_event.wait(seconds):
                raise SessionCancelled("Recognition cancelled during retry backoff.")
            return
        sleep(seconds)


def _with_attempts(result: MatchResult, attempts: int) -> MatchResult:
    if result.attempts == attempts:
        return result
    return replace(result, attempts=attempts)


def _better_of(current: Optional[MatchResult], other: MatchResult) -> MatchResult:
    if current is None:
        return other
    # A scored attempt outranks one that never produced a candidate.
    if other.score > current.score:
        return other
    if other.score == current.score and current.reason not in (BELOW_THRESHOLD, AMBIGUOUS_MARGIN):
        return other
    return current


__all__ = [
    "AMBIGUOUS_MARGIN",
    "BELOW_THRESHOLD",
    "MATCHED",
    "MatchDecisionEngine",
    "NO_ENROLLED_IDENTITIES",
]
