from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime

from constants import StreamPlatform


# Session Schemas
class SessionCreate(BaseModel):
    """
    Configuration for a new streaming session.

    Known platforms take a stream_key; 'custom' takes a full rtmp(s) URL in
    destination (a stream_key is appended to it when given).
    """
    name: str = Field(..., min_length=1, max_length=200)
    source: str = Field(..., min_length=1, description="Media path, or 'loop:<path>' to loop forever")
    platform: StreamPlatform = StreamPlatform.CUSTOM
    stream_key: Optional[str] = None
    destination: Optional[str] = None
    owner: Optional[str] = None

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('name must not be blank')
        return v


class SessionResponse(BaseModel):
    id: str
    name: str
    source: str
    platform: str
    destination: str
    desired_state: str
    status: str
    process_handle: Optional[str] = None
    last_error: Optional[str] = None
    owner: Optional[str] = None
    started_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProcessHandleResponse(BaseModel):
    session_id: str
    instance_name: str
    status: str
    started_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionActionResponse(BaseModel):
    """Result of start/stop/reset: the session after the operation"""
    session: SessionResponse
    changed: bool
    handle: Optional[ProcessHandleResponse] = None


# Schedule Schemas
class ScheduleRule(BaseModel):
    """
    When and what a schedule triggers.

    time_spec is an ISO-8601 instant for one_time rules (a naive value is read
    in `timezone`) and HH:MM or HH:MM:SS for daily rules.
    """
    kind: Literal['one_time', 'daily']
    action: Literal['start', 'stop'] = 'start'
    time_spec: str = Field(..., min_length=1)
    timezone: str = 'UTC'
    enabled: bool = True


class ScheduleCreate(ScheduleRule):
    session_id: str


class ScheduleUpdate(BaseModel):
    """Partial update; omitted fields keep their current value"""
    kind: Optional[Literal['one_time', 'daily']] = None
    action: Optional[Literal['start', 'stop']] = None
    time_spec: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None


class ScheduleResponse(BaseModel):
    id: str
    session_id: str
    kind: str
    action: str
    time_spec: str
    timezone: str
    enabled: bool
    disabled_reason: Optional[str] = None
    last_fired_at: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Recovery Schemas
class ReconcileReportResponse(BaseModel):
    adopted: List[str] = []
    restarted: List[str] = []
    restart_failed: List[str] = []
    stopped: List[str] = []
    orphans_stopped: List[str] = []
    normalized: List[str] = []
    errors: List[str] = []

    class Config:
        from_attributes = True


class SystemStatus(BaseModel):
    process_backend: str
    scheduler_running: bool
    sessions_by_status: dict
    tracked_processes: int
    enabled_schedules: int
    next_fire_at: Optional[datetime] = None
    websocket_clients: int
    cpu_percent: float
    memory_percent: float
    last_reconcile: Optional[ReconcileReportResponse] = None
