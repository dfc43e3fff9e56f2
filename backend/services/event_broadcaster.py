"""
Event Broadcasting Service

Records session state changes in the events table and pushes them to
WebSocket clients. Callers invoke it only after the state change itself has
been committed, so clients never see a state that could still roll back.
"""
import json
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Event, utcnow
from services.websocket import ConnectionManager

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """
    Service for creating Event records and broadcasting real-time updates.

    Notification failures are logged and never propagate: by the time a
    notification is emitted the operation has already succeeded.
    """

    def __init__(self, manager: ConnectionManager, session_factory: Callable[[], Session]):
        self.manager = manager
        self.session_factory = session_factory

    def _record(self, session_id: Optional[str], event_type: str, payload: dict):
        db = self.session_factory()
        try:
            db.add(Event(
                session_id=session_id,
                event_type=event_type,
                payload_json=json.dumps(payload),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not record {event_type} event for session {session_id}: {e}")
        finally:
            db.close()

    async def session_state_changed(self, session_id: str, new_state: str):
        """
        Log a committed session state change and broadcast it

        Args:
            session_id: UUID of the session
            new_state: Status value that was just committed
        """
        timestamp = utcnow().isoformat() + "Z"
        payload = {"session_id": session_id, "new_state": new_state, "timestamp": timestamp}
        self._record(session_id, 'session_state', payload)
        await self.manager.send_session_state(session_id, new_state, timestamp)
        logger.info(f"📡 Session {session_id} → {new_state}")

    async def schedule_fired(self, schedule_id: str, session_id: str, action: str, fired_at: str):
        payload = {"schedule_id": schedule_id, "action": action, "fired_at": fired_at}
        self._record(session_id, 'schedule_fired', payload)
        await self.manager.send_schedule_fired(schedule_id, session_id, action, fired_at)

    async def error(self, error_type: str, error_message: str, session_id: Optional[str] = None, schedule_id: Optional[str] = None):
        context = {k: v for k, v in (("session_id", session_id), ("schedule_id", schedule_id)) if v}
        self._record(session_id, 'error', {"error_type": error_type, "error_message": error_message, **context})
        await self.manager.send_error(error_type, error_message, context)
