"""
Repository layer for data access abstraction.

This package contains repository classes that encapsulate database queries
and provide a clean interface for data access operations.
"""

from .base_repository import BaseRepository
from .session_repository import SessionRepository
from .schedule_repository import ScheduleRepository

__all__ = [
    "BaseRepository",
    "SessionRepository",
    "ScheduleRepository",
]
