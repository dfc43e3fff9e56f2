"""
Session Registry

Authoritative owner of session lifecycle state. Every operation on a session
runs under that session's lock, validates the transition against the state
machine, commits the new state, and only then notifies clients.

Callers (API routes, the schedule engine, the reconciler) never talk to the
ProcessSupervisor directly for state changes; they go through here.
"""
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from constants import StreamPlatform
from domain.value_objects.process_status import ProcessHandle, ProcessStatus
from domain.value_objects.session_state import DesiredState, SessionState
from exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    ProcessControlError,
    ProcessNotFound,
    ProcessStartError,
    SessionNotFound,
)
from models import Session as SessionModel
from repositories.session_repository import SessionRepository
from schemas import SessionCreate
from services.command_builder import resolve_destination, resolve_source
from services.event_broadcaster import EventBroadcaster
from services.process_supervisor import ProcessSupervisor
from utils.keyed_lock import KeyedLock
from utils.retry import commit_with_retry

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Validates and serializes every state change of every session"""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        broadcaster: EventBroadcaster,
        session_factory: Callable[[], Session],
        media_root: Path,
        locks: Optional[KeyedLock] = None,
    ):
        self.supervisor = supervisor
        self.broadcaster = broadcaster
        self.session_factory = session_factory
        self.media_root = Path(media_root)
        self.locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _detach(db: Session, obj):
        db.refresh(obj)
        db.expunge(obj)
        return obj

    def _load(self, session_id: str) -> SessionModel:
        db = self.session_factory()
        try:
            session = SessionRepository(db).get_by_id(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            db.expunge(session)
            return session
        finally:
            db.close()

    async def _apply(self, session_id: str, target: Optional[SessionState], **fields) -> SessionModel:
        """
        Commit a state transition (and/or plain field updates) for one session.

        Raises:
            SessionNotFound: If the row disappeared
            InvalidTransitionError: If target is not reachable from the stored state
            PersistenceError: If storage stays unavailable
        """
        db = self.session_factory()
        try:
            def mutate():
                session = SessionRepository(db).get_by_id(session_id)
                if session is None:
                    raise SessionNotFound(session_id)
                if target is not None and session.status != target.value:
                    current = session.state
                    if not current.can_transition_to(target):
                        raise InvalidTransitionError(session_id, current.value, target.value)
                    session.status = target.value
                for key, value in fields.items():
                    setattr(session, key, value)
                return session

            session = await commit_with_retry(db, f"update session {session_id}", mutate)
            return self._detach(db, session)
        finally:
            db.close()

    async def _transition(self, session_id: str, target: SessionState, **fields) -> SessionModel:
        session = await self._apply(session_id, target, **fields)
        await self.broadcaster.session_state_changed(session_id, target.value)
        return session

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> SessionModel:
        """
        Raises:
            SessionNotFound: If no session has this id
        """
        return self._load(session_id)

    def list_sessions(self, status: Optional[SessionState] = None) -> List[SessionModel]:
        db = self.session_factory()
        try:
            repo = SessionRepository(db)
            sessions = repo.get_by_status(status) if status else repo.get_all()
            for session in sessions:
                db.expunge(session)
            return sessions
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_session(self, config: SessionCreate) -> SessionModel:
        """
        Validate a session configuration and persist it as idle.

        Raises:
            ConfigurationError: If the source or destination is invalid
        """
        resolve_source(config.source, self.media_root)
        destination = resolve_destination(
            StreamPlatform(config.platform),
            stream_key=config.stream_key,
            custom_url=config.destination,
        )

        db = self.session_factory()
        try:
            def mutate():
                return SessionRepository(db).create(SessionModel(
                    name=config.name,
                    source=config.source,
                    platform=StreamPlatform(config.platform).value,
                    destination=destination,
                    owner=config.owner,
                    desired_state=DesiredState.STOPPED.value,
                    status=SessionState.IDLE.value,
                ))

            session = await commit_with_retry(db, "create session", mutate)
            session = self._detach(db, session)
        finally:
            db.close()

        logger.info(f"Created session {session.id} ({session.name}) → {session.platform}")
        await self.broadcaster.session_state_changed(session.id, session.status)
        return session

    async def request_start(self, session_id: str) -> Tuple[ProcessHandle, bool]:
        """
        Start the session's process.

        Idempotent: a running session returns its current handle untouched.

        Returns:
            (handle, changed) where changed is False for the idempotent case

        Raises:
            SessionNotFound: If the session does not exist
            InvalidTransitionError: If the session is failed (reset first) or mid-transition
            ProcessStartError: If the process could not be started (session is now failed)
            ConfigurationError: If the stored source/destination no longer validates (session is now failed)
        """
        async with self.locks.hold(session_id):
            session = self._load(session_id)
            state = session.state

            if state == SessionState.RUNNING:
                try:
                    handle = self.supervisor.get_handle(session_id)
                except ProcessNotFound:
                    handle = self.supervisor.adopt(session_id, ProcessStatus.RUNNING, session.started_at)
                return handle, False

            if state != SessionState.IDLE:
                raise InvalidTransitionError(session_id, state.value, SessionState.STARTING.value)

            session = await self._transition(
                session_id, SessionState.STARTING,
                desired_state=DesiredState.RUNNING.value,
                last_error=None,
            )

            try:
                handle = await self.supervisor.start(session)
            except (ProcessStartError, ConfigurationError) as e:
                logger.error(f"❌ Start failed for session {session_id}: {e.message}")
                await self._transition(
                    session_id, SessionState.FAILED,
                    last_error=e.message,
                    process_handle=None,
                )
                raise

            await self._transition(
                session_id, SessionState.RUNNING,
                process_handle=handle.instance_name,
                started_at=handle.started_at,
            )
            return handle, True

    async def request_stop(self, session_id: str) -> bool:
        """
        Stop the session's process.

        Idempotent: idle and failed sessions succeed without doing anything.

        Returns:
            True if a running session was stopped

        Raises:
            SessionNotFound: If the session does not exist
            InvalidTransitionError: If the session is mid-transition
            ProcessControlError: If the facility could not stop it (session is now failed)
        """
        async with self.locks.hold(session_id):
            session = self._load(session_id)
            state = session.state

            if state in (SessionState.IDLE, SessionState.FAILED):
                if session.desired_state != DesiredState.STOPPED.value:
                    await self._apply(session_id, None, desired_state=DesiredState.STOPPED.value)
                return False

            if state != SessionState.RUNNING:
                raise InvalidTransitionError(session_id, state.value, SessionState.STOPPING.value)

            await self._transition(session_id, SessionState.STOPPING, desired_state=DesiredState.STOPPED.value)

            try:
                await self.supervisor.stop(session_id)
            except ProcessControlError as e:
                logger.error(f"❌ Stop failed for session {session_id}: {e.message}")
                await self._transition(session_id, SessionState.FAILED, last_error=e.message)
                raise

            await self._transition(
                session_id, SessionState.IDLE,
                process_handle=None,
                started_at=None,
            )
            return True

    async def reset(self, session_id: str) -> bool:
        """
        Return a failed session to idle.

        Any process left behind (a crashed unit that systemd keeps restarting)
        is stopped first.

        Returns:
            True if the session was failed and is now idle, False if it was already idle

        Raises:
            InvalidTransitionError: For sessions that are neither failed nor idle
        """
        async with self.locks.hold(session_id):
            session = self._load(session_id)
            state = session.state

            if state == SessionState.IDLE:
                return False
            if state != SessionState.FAILED:
                raise InvalidTransitionError(session_id, state.value, SessionState.IDLE.value)

            await self.supervisor.stop(session_id)
            await self._transition(
                session_id, SessionState.IDLE,
                desired_state=DesiredState.STOPPED.value,
                process_handle=None,
                started_at=None,
                last_error=None,
            )
            logger.info(f"Session {session_id} reset to idle")
            return True

    async def delete(self, session_id: str) -> int:
        """
        Delete a session: stop its process, remove its schedules, then the row.

        Returns:
            Number of schedules removed with the session

        Raises:
            SessionNotFound: If the session does not exist
            ProcessControlError: If the process could not be confirmed stopped (nothing is deleted)
        """
        async with self.locks.hold(session_id):
            session = self._load(session_id)

            if session.state == SessionState.RUNNING:
                await self._transition(session_id, SessionState.STOPPING, desired_state=DesiredState.STOPPED.value)
                try:
                    await self.supervisor.stop(session_id)
                except ProcessControlError as e:
                    await self._transition(session_id, SessionState.FAILED, last_error=e.message)
                    raise
                await self._transition(session_id, SessionState.IDLE, process_handle=None, started_at=None)
            else:
                await self.supervisor.stop(session_id)

            status = await self.supervisor.status(session_id)
            if status == ProcessStatus.RUNNING:
                raise ProcessControlError(
                    "stop", self.supervisor.instance_name(session_id),
                    f"Process for session {session_id} is still running; not deleting",
                )

            db = self.session_factory()
            try:
                def mutate():
                    repo = SessionRepository(db)
                    row = repo.get_by_id(session_id)
                    if row is None:
                        raise SessionNotFound(session_id)
                    return repo.delete_with_schedules(row)

                removed = await commit_with_retry(db, f"delete session {session_id}", mutate)
            finally:
                db.close()

        logger.info(f"🗑️ Deleted session {session_id} and {removed} schedule(s)")
        return removed

    async def restore(self, session_id: str, status: SessionState, **fields) -> SessionModel:
        """
        Overwrite a session's status with what was observed on the host.

        Used only by startup reconciliation, where the stored status may be
        stale (crash mid-transition) and the transition table does not apply.
        """
        async with self.locks.hold(session_id):
            before = self._load(session_id)
            fields["status"] = status.value
            session = await self._apply(session_id, None, **fields)
        if before.status != status.value:
            logger.info(f"Session {session_id} restored {before.status} → {status.value}")
            await self.broadcaster.session_state_changed(session_id, status.value)
        return session

    async def check_health(self) -> List[str]:
        """
        Detect crashed processes behind running sessions.

        A running session whose process is no longer running moves to failed.
        There is no automatic restart; an operator resets and starts it again.

        Returns:
            Ids of sessions that were marked failed
        """
        failed = []
        for session in self.list_sessions(SessionState.RUNNING):
            try:
                status = await self.supervisor.status(session.id)
            except ProcessControlError as e:
                logger.warning(f"Health check for session {session.id} skipped: {e.message}")
                continue
            if status == ProcessStatus.RUNNING:
                continue

            async with self.locks.hold(session.id):
                try:
                    current = self._load(session.id)
                except SessionNotFound:
                    continue
                if current.state != SessionState.RUNNING:
                    continue
                # An operator may have restarted it while we waited for the lock
                try:
                    status = await self.supervisor.status(session.id)
                except ProcessControlError as e:
                    logger.warning(f"Health check for session {session.id} skipped: {e.message}")
                    continue
                if status == ProcessStatus.RUNNING:
                    continue
                self.supervisor.forget(session.id)
                await self._transition(
                    session.id, SessionState.FAILED,
                    last_error=f"Process exited unexpectedly (status: {status.value})",
                )
            logger.warning(f"💥 Session {session.id} process is {status.value}; marked failed")
            failed.append(session.id)
        return failed
