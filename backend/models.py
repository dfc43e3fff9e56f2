from sqlalchemy import Column, String, Integer, Boolean, Text, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from database import Base
from domain.value_objects.session_state import SessionState, DesiredState
from domain.value_objects.schedule_state import ScheduleState


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention for every DateTime column)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Session(Base):
    """
    A logical streaming configuration bound to zero or one external process.

    Session States:
    - idle: No process, nothing in flight
    - starting: Start requested, waiting for the process to report running
    - running: Process confirmed running (process_handle is set)
    - stopping: Stop requested, waiting for the process to go away
    - failed: Start failed or a crash was detected; needs an operator reset

    desired_state records intent (what the operator or a schedule asked for)
    independently of status, so the startup reconciler can converge the two.
    """
    __tablename__ = 'sessions'

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    source = Column(Text, nullable=False)        # Media path, or 'loop:<path>' to loop forever
    platform = Column(String, nullable=False, default='custom')
    destination = Column(Text, nullable=False)   # Resolved rtmp(s):// URL including stream key
    desired_state = Column(String, nullable=False, default=DesiredState.STOPPED.value)
    status = Column(String, nullable=False, default=SessionState.IDLE.value)
    process_handle = Column(String, nullable=True)  # External instance name while a process exists
    last_error = Column(Text, nullable=True)
    owner = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    schedules = relationship(
        "Schedule",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def state(self) -> SessionState:
        return SessionState.from_string(self.status)

    __table_args__ = (
        CheckConstraint("name != ''"),
        CheckConstraint("desired_state IN ('stopped', 'running')"),
        CheckConstraint("status IN ('idle', 'starting', 'running', 'stopping', 'failed')"),
        Index('idx_sessions_desired', 'desired_state'),
        Index('idx_sessions_status', 'status'),
    )


class Schedule(Base):
    """
    A persisted rule that starts or stops a session at computed instants.

    time_spec holds an ISO-8601 instant for one_time rules and HH:MM[:SS]
    for daily rules; both are interpreted in `timezone`.
    """
    __tablename__ = 'schedules'

    id = Column(String, primary_key=True, default=generate_uuid)
    session_id = Column(String, ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False)
    kind = Column(String, nullable=False)
    action = Column(String, nullable=False, default='start')
    time_spec = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default='UTC')
    enabled = Column(Boolean, nullable=False, default=True)
    disabled_reason = Column(String, nullable=True)  # paused | completed | orphaned
    last_fired_at = Column(DateTime, nullable=True)
    next_fire_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    session = relationship("Session", back_populates="schedules")

    @property
    def state(self) -> ScheduleState:
        return ScheduleState.from_columns(self.enabled, self.disabled_reason)

    def apply_state(self, state: ScheduleState):
        self.enabled = state.enabled
        self.disabled_reason = state.disabled_reason

    __table_args__ = (
        CheckConstraint("kind IN ('one_time', 'daily')"),
        CheckConstraint("action IN ('start', 'stop')"),
        Index('idx_schedules_due', 'enabled', 'next_fire_at'),
        Index('idx_schedules_session', 'session_id'),
    )


class Event(Base):
    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey('sessions.id', ondelete='CASCADE'))
    event_type = Column(String, nullable=False)
    payload_json = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_events_created', 'created_at'),
        Index('idx_events_type', 'event_type'),
    )


class Setting(Base):
    __tablename__ = 'settings'

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
