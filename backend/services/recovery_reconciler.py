"""
Recovery Reconciler

Brings persisted session state and the processes actually running on the
host back into agreement after the orchestrator starts, and keeps watching
for runtime crashes afterwards.

Startup rules per session (desired_state / observed process):
- running / running  -> adopt the process, status running
- running / absent   -> exactly one restart attempt; failure leaves it failed
- stopped / running  -> stop the process, status idle
- stopped / absent   -> transient states (starting, stopping) normalized to idle
- failed sessions keep their status; a leftover process is stopped
Instances with no session row are stopped as orphans.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Set

from constants import SchedulerConfig
from domain.value_objects.process_status import ProcessStatus
from domain.value_objects.session_state import DesiredState, SessionState
from exceptions import ApplicationError, ProcessControlError
from services.process_supervisor import ProcessSupervisor
from services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """What startup reconciliation did, by session id (instance name for orphans)"""
    adopted: List[str] = field(default_factory=list)
    restarted: List[str] = field(default_factory=list)
    restart_failed: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    orphans_stopped: List[str] = field(default_factory=list)
    normalized: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RecoveryReconciler:
    """Startup reconciliation plus a periodic health watch"""

    def __init__(
        self,
        registry: SessionRegistry,
        supervisor: ProcessSupervisor,
        health_interval: float = SchedulerConfig.HEALTH_CHECK_INTERVAL_SECONDS,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.health_interval = health_interval
        self.last_report: Optional[ReconcileReport] = None
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def reconcile_startup(self) -> ReconcileReport:
        """
        Converge every session with the host's processes. Runs once, before
        the schedule engine starts.
        """
        report = ReconcileReport()
        sessions = self.registry.list_sessions()
        known_ids = [s.id for s in sessions]

        running: Optional[Set[str]] = None
        try:
            discovered = await self.supervisor.reconcile_all(known_ids)
            running = {d.session_id for d in discovered if d.known and d.status == ProcessStatus.RUNNING}
        except ProcessControlError as e:
            # Fall back to asking about each session individually
            logger.error(f"Could not enumerate instances: {e.message}")
            report.errors.append(f"enumerate: {e.message}")
            discovered = []

        for instance in discovered:
            if instance.known or instance.status == ProcessStatus.STOPPED:
                continue
            try:
                await self.supervisor.stop_instance(instance.instance_name)
                report.orphans_stopped.append(instance.instance_name)
                logger.warning(f"🧹 Stopped orphan instance {instance.instance_name}")
            except ProcessControlError as e:
                report.errors.append(f"{instance.instance_name}: {e.message}")
                logger.error(f"Could not stop orphan {instance.instance_name}: {e.message}")

        for session in sessions:
            try:
                if running is not None:
                    is_running = session.id in running
                else:
                    is_running = await self.supervisor.status(session.id) == ProcessStatus.RUNNING
                await self._reconcile_session(session, is_running, report)
            except ApplicationError as e:
                report.errors.append(f"{session.id}: {e.message}")
                logger.error(f"Reconciliation of session {session.id} failed: {e.message}")

        self.last_report = report
        logger.info(
            f"🔄 Reconciled {len(sessions)} session(s): adopted={len(report.adopted)} "
            f"restarted={len(report.restarted)} restart_failed={len(report.restart_failed)} "
            f"stopped={len(report.stopped)} orphans={len(report.orphans_stopped)} "
            f"normalized={len(report.normalized)} errors={len(report.errors)}"
        )
        return report

    async def _reconcile_session(self, session, is_running: bool, report: ReconcileReport):
        state = session.state
        if state.is_transient():
            logger.warning(f"Session {session.id} was left {state.value} by an interrupted request")

        if state == SessionState.FAILED:
            if is_running:
                await self.supervisor.stop(session.id)
                report.stopped.append(session.id)
            return

        if session.desired_state == DesiredState.RUNNING.value:
            if is_running:
                handle = self.supervisor.adopt(session.id, ProcessStatus.RUNNING, session.started_at)
                await self.registry.restore(
                    session.id, SessionState.RUNNING,
                    process_handle=handle.instance_name,
                    started_at=handle.started_at,
                )
                report.adopted.append(session.id)
                return

            if state != SessionState.IDLE:
                await self.registry.restore(session.id, SessionState.IDLE, process_handle=None, started_at=None)
                report.normalized.append(session.id)

            logger.info(f"Session {session.id} should be running but has no process; restarting once")
            try:
                await self.registry.request_start(session.id)
                report.restarted.append(session.id)
            except ApplicationError as e:
                report.restart_failed.append(session.id)
                logger.error(f"Restart of session {session.id} failed: {e.message}")
            return

        if is_running:
            await self.supervisor.stop(session.id)
            report.stopped.append(session.id)

        if state != SessionState.IDLE:
            await self.registry.restore(session.id, SessionState.IDLE, process_handle=None, started_at=None)
            report.normalized.append(session.id)

    # ------------------------------------------------------------------
    # Runtime health watch
    # ------------------------------------------------------------------

    async def start_watch(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self.watch())
        logger.info(f"Health watch started (every {self.health_interval}s)")

    async def stop_watch(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health watch stopped")

    async def watch(self):
        """Periodically move running sessions with dead processes to failed"""
        while self.running:
            try:
                failed = await self.registry.check_health()
                if failed:
                    logger.warning(f"Health watch marked {len(failed)} session(s) failed")
            except Exception as e:
                logger.error(f"Health watch error: {e}", exc_info=True)
            await asyncio.sleep(self.health_interval)
