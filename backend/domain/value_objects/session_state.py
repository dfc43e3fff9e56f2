"""
SessionState Value Object

Immutable representation of a streaming session's lifecycle state, plus the
desired state the operator or a schedule asked for.
"""

from enum import Enum
from typing import Dict, Set


class DesiredState(str, Enum):
    """What the operator (or a schedule) wants the session to be doing."""

    STOPPED = "stopped"
    RUNNING = "running"


class SessionState(str, Enum):
    """
    Observed lifecycle state of a session.

    State flow:
    - IDLE -> STARTING (start requested)
    - STARTING -> RUNNING (process confirmed running) | FAILED (start failed)
    - RUNNING -> STOPPING (stop requested) | FAILED (crash detected)
    - STOPPING -> IDLE (process confirmed stopped) | FAILED (stop failed)
    - FAILED -> IDLE (explicit operator reset only)
    """

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"

    def is_transient(self) -> bool:
        """Check if this state only exists while a request is in flight."""
        return self in {SessionState.STARTING, SessionState.STOPPING}

    def can_transition_to(self, new_state: "SessionState") -> bool:
        """
        Check if transition to new state is valid.

        Args:
            new_state: Target state

        Returns:
            True if transition is allowed
        """
        return new_state in TRANSITIONS.get(self, set())

    @classmethod
    def from_string(cls, value: str) -> "SessionState":
        """
        Create SessionState from string value.

        Raises:
            ValueError: If value is not a valid state
        """
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Invalid session state: {value}")


TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.IDLE: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.RUNNING, SessionState.FAILED},
    SessionState.RUNNING: {SessionState.STOPPING, SessionState.FAILED},
    SessionState.STOPPING: {SessionState.IDLE, SessionState.FAILED},
    SessionState.FAILED: {SessionState.IDLE},
}
