"""
Dependency injection providers for FastAPI.

Routers never build services themselves: they ask for the pieces of the
Orchestrator that the lifespan placed on app.state. Tests swap the whole
orchestrator by assigning a different one to app.state.
"""

from fastapi import Request

from services.schedule_engine import ScheduleEngine
from services.session_registry import SessionRegistry


def get_session_registry(request: Request) -> SessionRegistry:
    """
    Factory function for the SessionRegistry of the running orchestrator.

    Returns:
        SessionRegistry instance
    """
    return request.app.state.orchestrator.registry


def get_schedule_engine(request: Request) -> ScheduleEngine:
    """
    Factory function for the ScheduleEngine of the running orchestrator.

    Returns:
        ScheduleEngine instance
    """
    return request.app.state.orchestrator.engine
