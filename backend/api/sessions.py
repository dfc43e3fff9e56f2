from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from constants import HTTPStatus
from dependencies import get_session_registry, get_schedule_engine
from domain.value_objects.session_state import SessionState
from schemas import (
    ProcessHandleResponse,
    ScheduleResponse,
    SessionActionResponse,
    SessionCreate,
    SessionResponse,
)
from services.schedule_engine import ScheduleEngine
from services.session_registry import SessionRegistry
from utils.error_handlers import handle_api_errors

router = APIRouter()


@router.get("/sessions", response_model=List[SessionResponse])
@handle_api_errors("List sessions")
def list_sessions(
    status: Optional[SessionState] = Query(None, description="Only sessions in this state"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """All sessions, oldest first."""
    return registry.list_sessions(status)


@router.post("/sessions", response_model=SessionResponse, status_code=HTTPStatus.CREATED)
@handle_api_errors("Create session")
async def create_session(
    config: SessionCreate,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Validate the source and destination, then store the session as idle."""
    return await registry.create_session(config)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
@handle_api_errors("Get session")
def get_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    return registry.get_session(session_id)


@router.delete("/sessions/{session_id}", status_code=HTTPStatus.OK)
@handle_api_errors("Delete session")
async def delete_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Stop the session's process, remove its schedules and the session."""
    removed = await registry.delete(session_id)
    return {"deleted": session_id, "schedules_removed": removed}


@router.post("/sessions/{session_id}/start", response_model=SessionActionResponse)
@handle_api_errors("Start session")
async def start_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """
    Start streaming. Starting a running session is a no-op that returns
    its current process handle.
    """
    handle, changed = await registry.request_start(session_id)
    return SessionActionResponse(
        session=SessionResponse.model_validate(registry.get_session(session_id)),
        changed=changed,
        handle=ProcessHandleResponse(
            session_id=handle.session_id,
            instance_name=handle.instance_name,
            status=handle.status.value,
            started_at=handle.started_at,
        ),
    )


@router.post("/sessions/{session_id}/stop", response_model=SessionActionResponse)
@handle_api_errors("Stop session")
async def stop_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Stop streaming. Stopping an idle or failed session is a no-op."""
    changed = await registry.request_stop(session_id)
    return SessionActionResponse(
        session=SessionResponse.model_validate(registry.get_session(session_id)),
        changed=changed,
    )


@router.post("/sessions/{session_id}/reset", response_model=SessionActionResponse)
@handle_api_errors("Reset session")
async def reset_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Return a failed session to idle so it can be started again."""
    changed = await registry.reset(session_id)
    return SessionActionResponse(
        session=SessionResponse.model_validate(registry.get_session(session_id)),
        changed=changed,
    )


@router.get("/sessions/{session_id}/schedules", response_model=List[ScheduleResponse])
@handle_api_errors("List session schedules")
def list_session_schedules(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
    engine: ScheduleEngine = Depends(get_schedule_engine),
):
    registry.get_session(session_id)
    return engine.list(session_id)
