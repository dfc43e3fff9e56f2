"""
Session repository for session-specific data access operations.
"""

from typing import List

from sqlalchemy.orm import Session

from models import Session as SessionModel, Schedule as ScheduleModel
from domain.value_objects.session_state import SessionState
from .base_repository import BaseRepository


class SessionRepository(BaseRepository[SessionModel]):
    """Repository for Session model operations."""

    def __init__(self, db: Session):
        super().__init__(db, SessionModel)

    def get_by_status(self, *states: SessionState) -> List[SessionModel]:
        """
        Get sessions currently in any of the given states.

        Args:
            *states: One or more SessionState values

        Returns:
            Matching sessions
        """
        return self.db.query(self.model).filter(
            self.model.status.in_([s.value for s in states])
        ).all()

    def delete_with_schedules(self, session: SessionModel) -> int:
        """
        Remove a session's schedules and then the session itself.

        Args:
            session: Session instance to delete

        Returns:
            Number of schedules removed
        """
        removed = self.db.query(ScheduleModel).filter(
            ScheduleModel.session_id == session.id
        ).delete(synchronize_session='fetch')
        self.db.flush()
        self.db.expire(session, ['schedules'])
        self.delete(session)
        return removed
