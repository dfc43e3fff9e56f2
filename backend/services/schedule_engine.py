"""
Schedule Engine

Persistent, timezone-aware scheduler that starts and stops sessions.

Firing contract (at-most-once):
1. Load enabled schedules whose next_fire_at has passed.
2. For each, commit last_fired_at and the recomputed next_fire_at in one
   transaction guarded by a compare-and-set on the previous next_fire_at.
3. Only after that commit, dispatch the action to the SessionRegistry.

A crash between 2 and 3 loses that occurrence; it is never fired twice.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from sqlalchemy.orm import Session

from constants import SchedulerConfig
from domain.value_objects.schedule_state import ScheduleAction, ScheduleState
from exceptions import ApplicationError, ScheduleNotFound, ScheduleValidationError, SessionNotFound
from models import Schedule as ScheduleModel
from repositories.schedule_repository import ScheduleRepository
from repositories.session_repository import SessionRepository
from schemas import ScheduleRule, ScheduleUpdate
from services.event_broadcaster import EventBroadcaster
from services.schedule_rules import compile_rule, from_storage, to_storage
from services.session_registry import SessionRegistry
from utils.logging_utils import StructuredLogger, clear_logging_context, set_logging_context
from utils.retry import commit_with_retry

logger = logging.getLogger(__name__)
fire_logger = StructuredLogger(f"{__name__}.fire")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleEngine:
    """Evaluates schedules and dispatches their actions to the SessionRegistry"""

    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: EventBroadcaster,
        session_factory: Callable[[], Session],
        poll_interval: float = SchedulerConfig.MAX_POLL_INTERVAL_SECONDS,
        dispatch_concurrency: int = SchedulerConfig.DISPATCH_CONCURRENCY,
        drain_timeout: float = SchedulerConfig.DISPATCH_DRAIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max(1, dispatch_concurrency))
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._dispatches: Set[asyncio.Task] = set()
        self.running = False
        self.last_tick_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return from_storage(now) if now is not None else self.clock()

    @staticmethod
    def _detach(db: Session, obj):
        db.refresh(obj)
        db.expunge(obj)
        return obj

    def wake(self):
        """Make the loop re-evaluate immediately (rule created or changed)"""
        self._wakeup.set()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get(self, schedule_id: str) -> ScheduleModel:
        db = self.session_factory()
        try:
            schedule = ScheduleRepository(db).get_by_id(schedule_id)
            if schedule is None:
                raise ScheduleNotFound(schedule_id)
            db.expunge(schedule)
            return schedule
        finally:
            db.close()

    def list(self, session_id: Optional[str] = None) -> List[ScheduleModel]:
        db = self.session_factory()
        try:
            repo = ScheduleRepository(db)
            schedules = repo.get_for_session(session_id) if session_id else repo.get_all()
            for schedule in schedules:
                db.expunge(schedule)
            return schedules
        finally:
            db.close()

    async def create(self, session_id: str, rule: ScheduleRule) -> ScheduleModel:
        """
        Attach a new schedule to an existing session.

        Raises:
            SessionNotFound: If the session does not exist
            ScheduleValidationError: Malformed rule or a one-time instant in the past
            TimezoneError: Unknown timezone
        """
        compiled = compile_rule(rule.kind, rule.time_spec, rule.timezone)
        next_fire_at = compiled.first_fire(self._now())
        state = ScheduleState.ACTIVE if rule.enabled else ScheduleState.PAUSED

        db = self.session_factory()
        try:
            def mutate():
                if not SessionRepository(db).exists(session_id):
                    raise SessionNotFound(session_id)
                schedule = ScheduleModel(
                    session_id=session_id,
                    kind=rule.kind,
                    action=rule.action,
                    time_spec=rule.time_spec.strip(),
                    timezone=rule.timezone.strip(),
                    next_fire_at=to_storage(next_fire_at) if state.enabled else None,
                )
                schedule.apply_state(state)
                return ScheduleRepository(db).create(schedule)

            schedule = await commit_with_retry(db, "create schedule", mutate)
            schedule = self._detach(db, schedule)
        finally:
            db.close()

        logger.info(f"📅 Schedule {schedule.id}: {schedule.action} session {session_id} "
                    f"({schedule.kind} {schedule.time_spec} {schedule.timezone}), next at {schedule.next_fire_at}")
        self.wake()
        return schedule

    async def update(self, schedule_id: str, changes: ScheduleUpdate) -> ScheduleModel:
        """
        Change a schedule's rule and/or enabled flag; next_fire_at is recomputed.

        A completed one-time schedule is re-armed when given a new rule.

        Raises:
            ScheduleNotFound: If the schedule does not exist
            ScheduleValidationError: Malformed rule, past instant, or an orphaned schedule
        """
        now = self._now()
        db = self.session_factory()
        try:
            def mutate():
                schedule = ScheduleRepository(db).get_by_id(schedule_id)
                if schedule is None:
                    raise ScheduleNotFound(schedule_id)

                fields = changes.model_dump(exclude_unset=True, exclude_none=True)
                enabled = fields.pop('enabled', None)
                for key, value in fields.items():
                    setattr(schedule, key, value.strip() if isinstance(value, str) else value)

                current = schedule.state
                if enabled is True:
                    target = ScheduleState.ACTIVE
                elif enabled is False:
                    target = ScheduleState.PAUSED
                elif current == ScheduleState.COMPLETED and fields:
                    target = ScheduleState.ACTIVE
                else:
                    target = current

                if not current.can_transition_to(target):
                    raise ScheduleValidationError(
                        f"Schedule is {current.value} and cannot become {target.value}",
                        field="enabled",
                        schedule_id=schedule_id,
                    )

                compiled = compile_rule(schedule.kind, schedule.time_spec, schedule.timezone)
                if target == ScheduleState.ACTIVE:
                    schedule.next_fire_at = to_storage(
                        compiled.first_fire(now, after=from_storage(schedule.last_fired_at))
                    )
                else:
                    schedule.next_fire_at = None
                schedule.apply_state(target)
                schedule.last_error = None
                return schedule

            schedule = await commit_with_retry(db, f"update schedule {schedule_id}", mutate)
            schedule = self._detach(db, schedule)
        finally:
            db.close()

        logger.info(f"📅 Schedule {schedule_id} updated ({schedule.state.value}), next at {schedule.next_fire_at}")
        self.wake()
        return schedule

    async def delete(self, schedule_id: str) -> None:
        db = self.session_factory()
        try:
            def mutate():
                repo = ScheduleRepository(db)
                schedule = repo.get_by_id(schedule_id)
                if schedule is None:
                    raise ScheduleNotFound(schedule_id)
                repo.delete(schedule)

            await commit_with_retry(db, f"delete schedule {schedule_id}", mutate)
        finally:
            db.close()
        logger.info(f"Schedule {schedule_id} deleted")

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None, wait: bool = False) -> List[str]:
        """
        Fire every due schedule once.

        Args:
            now: Evaluation time (defaults to the engine clock)
            wait: Await the dispatched actions before returning

        Returns:
            Ids of schedules whose fire was committed by this tick
        """
        now = self._now(now)
        self.last_tick_at = now

        db = self.session_factory()
        try:
            due = ScheduleRepository(db).get_due(to_storage(now))
            for schedule in due:
                db.expunge(schedule)
        finally:
            db.close()

        fired: List[str] = []
        tasks = []
        for schedule in due:
            task = await self._fire(schedule, now)
            if task is not None:
                fired.append(schedule.id)
                tasks.append(task)

        if wait and tasks:
            await asyncio.gather(*tasks)
        return fired

    async def _fire(self, schedule: ScheduleModel, now: datetime) -> Optional[asyncio.Task]:
        """Commit the fire bookkeeping for one due schedule, then spawn its dispatch"""
        try:
            compiled = compile_rule(schedule.kind, schedule.time_spec, schedule.timezone)
        except ScheduleValidationError as e:
            logger.error(f"Schedule {schedule.id} no longer compiles, pausing it: {e.message}")
            await self._disable(schedule.id, ScheduleState.PAUSED, e.message)
            return None

        fired_at, next_fire_at, state = compiled.plan_fire(from_storage(schedule.next_fire_at), now)

        db = self.session_factory()
        try:
            def mutate():
                if not SessionRepository(db).exists(schedule.session_id):
                    return None
                return ScheduleRepository(db).record_fire(
                    schedule.id,
                    expected_next_fire_at=schedule.next_fire_at,
                    fired_at=to_storage(fired_at),
                    next_fire_at=to_storage(next_fire_at),
                    state=state,
                )

            won = await commit_with_retry(db, f"record fire of schedule {schedule.id}", mutate)
        except ApplicationError as e:
            logger.error(f"Could not record fire of schedule {schedule.id}, skipping: {e.message}")
            return None
        finally:
            db.close()

        if won is None:
            logger.warning(f"Schedule {schedule.id} targets missing session {schedule.session_id}; disabling")
            await self._disable(schedule.id, ScheduleState.ORPHANED, f"Session {schedule.session_id} no longer exists")
            return None
        if not won:
            logger.debug(f"Schedule {schedule.id} was changed or already fired; skipping")
            return None

        fire_logger.info(
            f"⏰ Firing {schedule.action} for occurrence {fired_at.isoformat()} (next: {next_fire_at.isoformat() if next_fire_at else 'none'})",
            extra={"schedule_id": schedule.id, "session_id": schedule.session_id},
        )
        task = asyncio.create_task(self._dispatch(schedule.id, schedule.session_id, schedule.action, fired_at))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    async def _dispatch(self, schedule_id: str, session_id: str, action: str, fired_at: datetime):
        """Hand a committed fire to the registry; failures are recorded, never raised"""
        async with self._semaphore:
            set_logging_context(schedule_id=schedule_id, session_id=session_id)
            try:
                if action == ScheduleAction.START.value:
                    await self.registry.request_start(session_id)
                else:
                    await self.registry.request_stop(session_id)
                await self.broadcaster.schedule_fired(schedule_id, session_id, action, fired_at.isoformat())
            except SessionNotFound:
                logger.warning(f"Session {session_id} vanished before schedule {schedule_id} dispatched; disabling")
                await self._disable(schedule_id, ScheduleState.ORPHANED, f"Session {session_id} no longer exists")
            except ApplicationError as e:
                fire_logger.error(f"Scheduled {action} failed: {e.message}")
                await self._record_error(schedule_id, e.message)
                await self.broadcaster.error("schedule_dispatch_failed", e.message,
                                             session_id=session_id, schedule_id=schedule_id)
            except Exception as e:
                fire_logger.error(f"Scheduled {action} failed unexpectedly: {e}", exc_info=True)
                await self._record_error(schedule_id, str(e))
            finally:
                clear_logging_context()

    async def _disable(self, schedule_id: str, state: ScheduleState, message: str):
        db = self.session_factory()
        try:
            await commit_with_retry(db, f"disable schedule {schedule_id}",
                                    lambda: ScheduleRepository(db).disable(schedule_id, state, message))
        except ApplicationError as e:
            logger.error(f"Could not disable schedule {schedule_id}: {e.message}")
        finally:
            db.close()

    async def _record_error(self, schedule_id: str, message: str):
        db = self.session_factory()
        try:
            await commit_with_retry(db, f"record error on schedule {schedule_id}",
                                    lambda: ScheduleRepository(db).record_error(schedule_id, message))
        except ApplicationError as e:
            logger.error(f"Could not record error on schedule {schedule_id}: {e.message}")
        finally:
            db.close()

    def _next_delay(self, now: datetime) -> float:
        db = self.session_factory()
        try:
            earliest = ScheduleRepository(db).earliest_next_fire_at()
        finally:
            db.close()
        if earliest is None:
            return self.poll_interval
        delay = (from_storage(earliest) - now).total_seconds()
        return min(max(delay, SchedulerConfig.MIN_SLEEP_SECONDS), self.poll_interval)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self):
        """Start the evaluation loop"""
        if self.running:
            logger.warning("Schedule engine already running")
            return
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Schedule engine started (max poll interval: {self.poll_interval}s)")

    async def stop(self):
        """
        Stop the evaluation loop.

        In-flight dispatches get drain_timeout seconds to finish their start or
        stop; whatever is still running after that is cancelled.
        """
        self.running = False
        self.wake()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._dispatches:
            logger.info(f"Waiting up to {self.drain_timeout:.1f}s for {len(self._dispatches)} dispatch(es)")
            _, pending = await asyncio.wait(set(self._dispatches), timeout=self.drain_timeout)
            if pending:
                logger.warning(f"⚠️ Cancelling {len(pending)} dispatch(es) still running after {self.drain_timeout:.1f}s")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Schedule engine stopped")

    async def _run(self):
        while self.running:
            self._wakeup.clear()
            try:
                await self.tick()
                delay = self._next_delay(self.clock())
            except Exception as e:
                logger.error(f"Error in schedule engine tick: {e}", exc_info=True)
                delay = self.poll_interval

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
