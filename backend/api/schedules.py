from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from constants import HTTPStatus
from dependencies import get_schedule_engine
from schemas import ScheduleCreate, ScheduleResponse, ScheduleUpdate
from services.schedule_engine import ScheduleEngine
from utils.error_handlers import handle_api_errors

router = APIRouter()


@router.get("/schedules", response_model=List[ScheduleResponse])
@handle_api_errors("List schedules")
def list_schedules(
    session_id: Optional[str] = Query(None, description="Only schedules of this session"),
    engine: ScheduleEngine = Depends(get_schedule_engine),
):
    return engine.list(session_id)


@router.post("/schedules", response_model=ScheduleResponse, status_code=HTTPStatus.CREATED)
@handle_api_errors("Create schedule")
async def create_schedule(request: ScheduleCreate, engine: ScheduleEngine = Depends(get_schedule_engine)):
    """
    Attach a schedule to a session.

    - daily: time_spec 'HH:MM[:SS]', fires every day at that wall-clock time in `timezone`
    - one_time: time_spec ISO-8601 instant; must be in the future
    """
    return await engine.create(request.session_id, request)


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
@handle_api_errors("Get schedule")
def get_schedule(schedule_id: str, engine: ScheduleEngine = Depends(get_schedule_engine)):
    return engine.get(schedule_id)


@router.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
@handle_api_errors("Update schedule")
async def update_schedule(
    schedule_id: str,
    changes: ScheduleUpdate,
    engine: ScheduleEngine = Depends(get_schedule_engine),
):
    """Change the rule or pause/resume; the next trigger time is recomputed."""
    return await engine.update(schedule_id, changes)


@router.delete("/schedules/{schedule_id}", status_code=HTTPStatus.NO_CONTENT)
@handle_api_errors("Delete schedule")
async def delete_schedule(schedule_id: str, engine: ScheduleEngine = Depends(get_schedule_engine)):
    await engine.delete(schedule_id)
