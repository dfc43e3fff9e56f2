"""
Orchestrator

Explicit construction and teardown of the stream orchestration services.
One instance is built in the FastAPI lifespan and hung on app.state; tests
build their own with a fake process-control facility and an in-memory
database.

Startup order: worker pool -> startup reconciliation -> schedule engine ->
health watch. Shutdown runs in reverse.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config.app_config import AppConfig
from constants import SchedulerConfig, SettingKeys, SupervisorConfig
from database import SessionLocal
from init_db import read_setting
from services.event_broadcaster import EventBroadcaster
from services.process_control import ProcessControl, create_process_control
from services.process_supervisor import ProcessSupervisor
from services.recovery_reconciler import ReconcileReport, RecoveryReconciler
from services.schedule_engine import ScheduleEngine
from services.session_registry import SessionRegistry
from services.websocket import ConnectionManager
from services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns every long-lived service and their start/stop order"""

    def __init__(
        self,
        config: AppConfig,
        session_factory: Callable[[], Session] = SessionLocal,
        facility: Optional[ProcessControl] = None,
        manager: Optional[ConnectionManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        start_poll_interval: float = SupervisorConfig.START_POLL_INTERVAL_SECONDS,
    ):
        self.config = config
        self.session_factory = session_factory

        db = session_factory()
        try:
            poll_interval = read_setting(db, SettingKeys.SCHEDULER_POLL_INTERVAL, SchedulerConfig.MAX_POLL_INTERVAL_SECONDS)
            concurrency = read_setting(db, SettingKeys.DISPATCH_CONCURRENCY, SchedulerConfig.DISPATCH_CONCURRENCY, int)
            health_interval = read_setting(db, SettingKeys.HEALTH_CHECK_INTERVAL, SchedulerConfig.HEALTH_CHECK_INTERVAL_SECONDS)
        finally:
            db.close()

        self.manager = manager or ConnectionManager()
        self.pool = WorkerPool(default_timeout=config.control_timeout)
        self.facility = facility or create_process_control(config)
        self.broadcaster = EventBroadcaster(self.manager, session_factory)
        self.supervisor = ProcessSupervisor(
            facility=self.facility,
            pool=self.pool,
            ffmpeg_path=config.ffmpeg_path,
            media_root=config.media_root,
            unit_prefix=config.unit_prefix,
            start_timeout=config.start_timeout,
            poll_interval=start_poll_interval,
            control_timeout=config.control_timeout,
        )
        self.registry = SessionRegistry(
            supervisor=self.supervisor,
            broadcaster=self.broadcaster,
            session_factory=session_factory,
            media_root=config.media_root,
        )
        engine_kwargs = {"clock": clock} if clock else {}
        self.engine = ScheduleEngine(
            registry=self.registry,
            broadcaster=self.broadcaster,
            session_factory=session_factory,
            poll_interval=poll_interval,
            dispatch_concurrency=concurrency,
            **engine_kwargs,
        )
        self.reconciler = RecoveryReconciler(
            registry=self.registry,
            supervisor=self.supervisor,
            health_interval=health_interval,
        )

    async def start(self) -> ReconcileReport:
        """Reconcile, then start the scheduler and the health watch"""
        self.pool.start()
        report = await self.reconciler.reconcile_startup()
        await self.engine.start()
        await self.reconciler.start_watch()
        logger.info("✅ Orchestrator started")
        return report

    async def stop(self):
        """Stop background loops; running encoders are left to the process manager"""
        await self.reconciler.stop_watch()
        await self.engine.stop()
        self.pool.stop()
        logger.info("Orchestrator stopped")
