"""
Schedule Value Objects

Rule kinds, the action a rule triggers, and the schedule lifecycle.
"""

from enum import Enum
from typing import Dict, Optional, Set


class ScheduleKind(str, Enum):
    ONE_TIME = "one_time"
    DAILY = "daily"


class ScheduleAction(str, Enum):
    START = "start"
    STOP = "stop"


class ScheduleState(str, Enum):
    """
    Lifecycle of a schedule.

    - ACTIVE: enabled, waiting for next_fire_at
    - PAUSED: disabled by the operator
    - COMPLETED: one-time rule that has fired
    - ORPHANED: target session disappeared; never fires again
    """

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ORPHANED = "orphaned"

    @property
    def enabled(self) -> bool:
        return self is ScheduleState.ACTIVE

    @property
    def disabled_reason(self) -> Optional[str]:
        """Value stored in schedules.disabled_reason for this state"""
        return None if self is ScheduleState.ACTIVE else self.value

    def can_transition_to(self, new_state: "ScheduleState") -> bool:
        return new_state == self or new_state in SCHEDULE_TRANSITIONS.get(self, set())

    @classmethod
    def from_columns(cls, enabled: bool, disabled_reason: Optional[str]) -> "ScheduleState":
        """Rebuild the state from the persisted enabled/disabled_reason pair"""
        if enabled:
            return cls.ACTIVE
        try:
            return cls(disabled_reason) if disabled_reason else cls.PAUSED
        except ValueError:
            return cls.PAUSED


SCHEDULE_TRANSITIONS: Dict[ScheduleState, Set[ScheduleState]] = {
    ScheduleState.ACTIVE: {ScheduleState.PAUSED, ScheduleState.COMPLETED, ScheduleState.ORPHANED},
    ScheduleState.PAUSED: {ScheduleState.ACTIVE, ScheduleState.ORPHANED},
    # A completed one-time rule may be re-armed by updating it with a new instant
    ScheduleState.COMPLETED: {ScheduleState.ACTIVE, ScheduleState.PAUSED},
    ScheduleState.ORPHANED: set(),
}
