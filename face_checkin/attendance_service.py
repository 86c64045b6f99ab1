from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import ThresholdPolicy
from .database import AttendanceDatabase
from .state_machine import AttendanceStateMachine
from .types import AttendanceEvent, Transition


class AttendanceService:
    """Read-side views over the event log."""

    def __init__(
        self,
        db: AttendanceDatabase,
        policy: Optional[ThresholdPolicy] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.clock = clock
        self.state_machine = AttendanceStateMachine.from_policy(policy or ThresholdPolicy())

    def events_between(self, start: date, end: date) -> List[AttendanceEvent]:
        """Events from the start of ``start`` through the end of ``end``."""
        if end < start:
            start, end = end, start
        lower = datetime.combine(start, datetime.min.time())
        upper = datetime.combine(end, datetime.min.time()) + timedelta(days=1)
        return self.db.list_by_date_range(lower, upper)

    def daily_summary(self, day: Optional[date] = None) -> Dict[str, Any]:
        day = day or self.clock().date()
        stats = self.db.attendance_stats(day)
        return {"date": day.isoformat(), **stats}

    def currently_present(self, now: Optional[datetime] = None) -> List[AttendanceEvent]:
        """Latest open entries, i.e. identities whose next transition would be an exit."""
        now = now or self.clock()
        present: List[AttendanceEvent] = []
        for profile in self.db.list_identities():
            latest = self.db.latest_for(profile.identity_key)
            if latest is None or latest.transition is not Transition.ENTRY:
                continue
            if self.state_machine.next_transition(latest, now) is Transition.EXIT:
                present.append(latest)
        present.sort(key=lambda event: event.timestamp)
        return present
