"""
Schedule repository: due-schedule queries and the fire bookkeeping update.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Schedule as ScheduleModel, utcnow
from domain.value_objects.schedule_state import ScheduleState
from .base_repository import BaseRepository


class ScheduleRepository(BaseRepository[ScheduleModel]):
    """Repository for Schedule model operations."""

    def __init__(self, db: Session):
        super().__init__(db, ScheduleModel)

    def get_for_session(self, session_id: str) -> List[ScheduleModel]:
        return self.db.query(self.model).filter(
            self.model.session_id == session_id
        ).order_by(self.model.created_at).all()

    def get_due(self, now: datetime) -> List[ScheduleModel]:
        """
        Get enabled schedules whose next trigger time has been reached.

        Args:
            now: Current time (naive UTC)

        Returns:
            Due schedules, earliest first
        """
        return self.db.query(self.model).filter(
            self.model.enabled.is_(True),
            self.model.next_fire_at.isnot(None),
            self.model.next_fire_at <= now,
        ).order_by(self.model.next_fire_at).all()

    def earliest_next_fire_at(self) -> Optional[datetime]:
        return self.db.query(func.min(self.model.next_fire_at)).filter(
            self.model.enabled.is_(True),
            self.model.next_fire_at.isnot(None),
        ).scalar()

    def record_fire(
        self,
        schedule_id: str,
        expected_next_fire_at: datetime,
        fired_at: datetime,
        next_fire_at: Optional[datetime],
        state: ScheduleState,
    ) -> bool:
        """
        Compare-and-set the fire bookkeeping for one schedule.

        The row is only touched if it is still enabled and its next_fire_at
        still equals the value the caller evaluated. A concurrent update or a
        previous fire of the same occurrence makes this a no-op.

        Args:
            schedule_id: Schedule UUID
            expected_next_fire_at: next_fire_at as read by the caller
            fired_at: Occurrence being fired (stored as last_fired_at)
            next_fire_at: Recomputed next trigger time, or None when disabling
            state: Resulting lifecycle state

        Returns:
            True if this caller won the update
        """
        updated = self.db.query(self.model).filter(
            self.model.id == schedule_id,
            self.model.enabled.is_(True),
            self.model.next_fire_at == expected_next_fire_at,
        ).update(
            {
                self.model.last_fired_at: fired_at,
                self.model.next_fire_at: next_fire_at,
                self.model.enabled: state.enabled,
                self.model.disabled_reason: state.disabled_reason,
                self.model.last_error: None,
                self.model.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        return updated == 1

    def disable(self, schedule_id: str, state: ScheduleState, message: Optional[str] = None) -> bool:
        """Disable a schedule (paused/completed/orphaned) and clear its trigger time"""
        updated = self.db.query(self.model).filter(self.model.id == schedule_id).update(
            {
                self.model.enabled: False,
                self.model.disabled_reason: state.disabled_reason,
                self.model.next_fire_at: None,
                self.model.last_error: message,
                self.model.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        return updated == 1

    def count_enabled(self) -> int:
        return self.db.query(self.model).filter(self.model.enabled.is_(True)).count()

    def record_error(self, schedule_id: str, message: str) -> None:
        self.db.query(self.model).filter(self.model.id == schedule_id).update(
            {self.model.last_error: message, self.model.updated_at: utcnow()},
            synchronize_session=False,
        )
