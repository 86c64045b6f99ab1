from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, Optional, Protocol, Sequence

import numpy as np


class ConfidenceTier(str, Enum):
    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"


class Transition(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


@dataclass(frozen=True)
class ValidatedEmbedding:
    """An embedding that passed the quality gate. The vector is read-only."""

    vector: np.ndarray = field(compare=False, repr=False)
    magnitude: float
    quality_score: float

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class Identity:
    identity_key: str
    display_name: str
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    enrolled_at: Optional[datetime] = None
    quality_score: Optional[float] = None
    created_at: Optional[datetime] = None

    @property
    def is_enrolled(self) -> bool:
        return self.embedding is not None and self.embedding.size > 0


@dataclass(frozen=True)
class EnrolledSet:
    """Identities with a reference embedding, as read in one go."""

    identities: tuple[Identity, ...] = ()
    taken_at: datetime = field(default_factory=datetime.now)

    def __len__(self) -> int:
        return len(self.identities)

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.identities)

    @property
    def is_empty(self) -> bool:
        return not any(identity.is_enrolled for identity in self.identities)


@dataclass(frozen=True)
class MatchCandidate:
    identity: Identity
    score: float

    @property
    def identity_key(self) -> str:
        return self.identity.identity_key


@dataclass(frozen=True)
class MatchResult:
    identity: Optional[Identity]
    score: float
    tier: ConfidenceTier
    margin: float
    reason: str
    runner_up: Optional[MatchCandidate] = None
    attempts: int = 1

    @property
    def matched(self) -> bool:
        return self.tier is not ConfidenceTier.NONE and self.identity is not None

    @property
    def identity_key(self) -> Optional[str]:
        return self.identity.identity_key if self.identity is not None else None

    def to_dict(self) -> dict:
        return {
            "identity_key": self.identity_key,
            "display_name": self.identity.display_name if self.identity is not None else None,
            "score": round(self.score, 4),
            "tier": self.tier.value,
            "margin": round(self.margin, 4),
            "reason": self.reason,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class AttendanceEvent:
    identity_key: str
    transition: Transition
    timestamp: datetime
    similarity: float
    capture_ref: Optional[str] = None
    event_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "identity_key": self.identity_key,
            "transition": self.transition.value,
            "timestamp": self.timestamp.isoformat(),
            "similarity": round(self.similarity, 4),
            "capture_ref": self.capture_ref,
        }


class EnrollmentStore(Protocol):
    def get(self, identity_key: str) -> Optional[Identity]: ...

    def upsert(self, identity: Identity, allow_replace: Optional[bool] = None) -> Identity: ...

    def list_enrolled(self) -> EnrolledSet: ...

    def delete(self, identity_key: str) -> bool: ...


class EventLog(Protocol):
    def append(
        self,
        event: AttendanceEvent,
        expected_latest_id: Optional[int] = None,
        guarded: bool = False,
    ) -> AttendanceEvent:
        """Append ``event``; with ``guarded`` raise AppendConflict unless the latest id matches."""
        ...

    def latest_for(self, identity_key: str) -> Optional[AttendanceEvent]: ...

    def list_by_date_range(self, start: datetime, end: datetime) -> Sequence[AttendanceEvent]: ...


class Extractor(Protocol):
    def extract(self, image_bytes: bytes) -> np.ndarray: ...
