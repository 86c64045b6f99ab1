from datetime import datetime, timedelta
from typing import Optional

from .config import ThresholdPolicy
from .types import AttendanceEvent, MatchResult, Transition

MIN_EVENT_SPACING = timedelta(microseconds=1)


class AttendanceStateMachine:
    """Decides whether the next event for an identity is an entry or an exit.

    An ``entry`` is paired with the next recognition inside the re-entry
    window. Once the window has passed, the open entry is treated as
    abandoned and the next recognition starts a fresh ``entry``.
    """

    def __init__(self, reentry_window: Optional[timedelta] = None):
        self.reentry_window = reentry_window if reentry_window is not None else ThresholdPolicy().reentry_window

    @classmethod
    def from_policy(cls, policy: ThresholdPolicy) -> "AttendanceStateMachine":
        return cls(reentry_window=policy.reentry_window)

    def next_transition(self, last_event: Optional[AttendanceEvent], now: datetime) -> Transition:
        if last_event is None:
            return Transition.ENTRY
        if last_event.transition is not Transition.ENTRY:
            return Transition.ENTRY

        elapsed = now - last_event.timestamp
        if elapsed < self.reentry_window:
            return Transition.EXIT
        return Transition.ENTRY

    def build_event(
        self,
        match: MatchResult,
        last_event: Optional[AttendanceEvent],
        now: Optional[datetime] = None,
        capture_ref: Optional[str] = None,
    ) -> AttendanceEvent:
        if not match.matched or match.identity_key is None:
            raise ValueError("Attendance events are only built for confident matches.")

        now = now or datetime.now()
        if last_event is not None and last_event.identity_key != match.identity_key:
            raise ValueError("Last event belongs to a different identity.")

        # Keep per-identity timestamps strictly increasing in append order.
        timestamp = now
        if last_event is not None and timestamp <= last_event.timestamp:
            timestamp = last_event.timestamp + MIN_EVENT_SPACING

        return AttendanceEvent(
            identity_key=match.identity_key,
            transition=self.next_transition(last_event, now),
            timestamp=timestamp,
            similarity=match.score,
            capture_ref=capture_ref,
        )
