"""
Process Supervisor

Owns the mapping from sessions to external encoding processes. Knows how to
start, stop and query the process for a session through the configured
process-control facility, and how to rediscover processes that outlived a
restart of the orchestrator.

All facility calls go through the WorkerPool so a slow systemctl never blocks
the event loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from constants import SupervisorConfig
from domain.value_objects.process_status import ProcessHandle, ProcessStatus
from exceptions import ProcessControlError, ProcessNotFound, ProcessStartError
from models import utcnow
from services.command_builder import build_command, instance_name_for, session_id_from_instance
from services.process_control import ProcessControl
from services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredInstance:
    """An instance found while enumerating the facility"""
    instance_name: str
    session_id: Optional[str]
    status: ProcessStatus
    known: bool

    @property
    def orphan(self) -> bool:
        return not self.known


class ProcessSupervisor:
    """Starts, stops and tracks one external process per session"""

    def __init__(
        self,
        facility: ProcessControl,
        pool: WorkerPool,
        ffmpeg_path: str,
        media_root: Path,
        unit_prefix: str = SupervisorConfig.UNIT_PREFIX,
        start_timeout: float = SupervisorConfig.START_TIMEOUT_SECONDS,
        poll_interval: float = SupervisorConfig.START_POLL_INTERVAL_SECONDS,
        control_timeout: float = SupervisorConfig.CONTROL_TIMEOUT_SECONDS,
    ):
        self.facility = facility
        self.pool = pool
        self.ffmpeg_path = ffmpeg_path
        self.media_root = Path(media_root)
        self.unit_prefix = unit_prefix
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.control_timeout = control_timeout
        # Stop may have to wait out SIGTERM and then SIGKILL
        self.stop_timeout = control_timeout + 2 * SupervisorConfig.STOP_GRACE_SECONDS
        self._handles: Dict[str, ProcessHandle] = {}

    def instance_name(self, session_id: str) -> str:
        return instance_name_for(self.unit_prefix, session_id)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def get_handle(self, session_id: str) -> ProcessHandle:
        """
        Get the tracked handle for a session.

        Raises:
            ProcessNotFound: If no process is tracked for the session
        """
        handle = self._handles.get(session_id)
        if handle is None:
            raise ProcessNotFound(session_id)
        return handle

    def adopt(self, session_id: str, status: ProcessStatus = ProcessStatus.RUNNING,
              started_at=None) -> ProcessHandle:
        """Track a process that is already running under the session's instance name"""
        handle = ProcessHandle(
            session_id=session_id,
            instance_name=self.instance_name(session_id),
            status=status,
            started_at=started_at or utcnow(),
        )
        self._handles[session_id] = handle
        return handle

    def forget(self, session_id: str) -> None:
        self._handles.pop(session_id, None)

    def tracked(self) -> List[ProcessHandle]:
        return list(self._handles.values())

    # ------------------------------------------------------------------
    # Facility operations
    # ------------------------------------------------------------------

    async def start(self, session) -> ProcessHandle:
        """
        Start the encoding process for a session and wait until it runs.

        Args:
            session: Object with id, source and destination (a Session row)

        Returns:
            Handle of the running process

        Raises:
            ConfigurationError: If source or destination are invalid
            ProcessStartError: If the facility fails or the process never reaches running
        """
        name = self.instance_name(session.id)
        command = build_command(self.ffmpeg_path, session.source, session.destination,
                                self.media_root, session_id=session.id)

        try:
            if await self.status(session.id) == ProcessStatus.RUNNING:
                logger.info(f"{name} is already running, adopting it")
                return self.adopt(session.id)
        except ProcessControlError as e:
            raise ProcessStartError(session.id, f"Could not start {name}: {e.message}", name) from e

        try:
            await self.pool.run(self.facility.start, name, command.argv,
                                timeout=self.control_timeout, operation="start", target=name)
        except ProcessControlError as e:
            # An overrun start may still launch the process
            await self._discard_instance(name)
            raise ProcessStartError(session.id, f"Could not start {name}: {e.message}", name) from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout
        status = ProcessStatus.STOPPED
        while True:
            try:
                status = await self.status(session.id)
            except ProcessControlError as e:
                logger.warning(f"Status check for {name} failed while starting: {e.message}")
                status = ProcessStatus.STOPPED
            if status == ProcessStatus.RUNNING:
                handle = self.adopt(session.id)
                logger.info(f"✅ {name} is running")
                return handle
            if status == ProcessStatus.FAILED or loop.time() >= deadline:
                break
            await asyncio.sleep(self.poll_interval)

        await self._discard_instance(name)
        raise ProcessStartError(
            session.id,
            f"{name} did not reach running within {self.start_timeout:.1f}s (last status: {status.value})",
            name,
        )

    async def _discard_instance(self, name: str) -> None:
        """Stop whatever a failed start left behind under the instance name"""
        if not await self.pool.settle(name, timeout=self.stop_timeout):
            logger.error(f"Start of {name} is still executing; stopping the instance anyway")
        try:
            await self.stop_instance(name)
        except ProcessControlError as e:
            logger.error(f"Cleanup of {name} after failed start also failed: {e.message}")

    async def stop(self, session_id: str) -> bool:
        """
        Stop the process for a session. Idempotent.

        Returns:
            True if a process was stopped, False if nothing was running

        Raises:
            ProcessControlError: If the facility fails or times out
        """
        stopped = await self.stop_instance(self.instance_name(session_id))
        self.forget(session_id)
        return stopped

    async def stop_instance(self, instance_name: str) -> bool:
        return await self.pool.run(self.facility.stop, instance_name,
                                   timeout=self.stop_timeout, operation="stop", target=instance_name)

    async def status(self, session_id: str) -> ProcessStatus:
        """
        Query the facility for the session's process.

        Works for untracked sessions too, so it is safe to call after a restart.
        """
        name = self.instance_name(session_id)
        status = await self.pool.run(self.facility.status, name,
                                     timeout=self.control_timeout, operation="status", target=name)
        handle = self._handles.get(session_id)
        if handle is not None and handle.status != status:
            self._handles[session_id] = handle.with_status(status)
        return status

    async def reconcile_all(self, known_session_ids: Iterable[str]) -> List[DiscoveredInstance]:
        """
        Enumerate every instance following the naming convention.

        Running instances of known sessions are adopted; everything else is
        reported back and left for the caller to act on.

        Args:
            known_session_ids: Ids of sessions that exist in the database

        Returns:
            One entry per instance found
        """
        known = set(known_session_ids)
        instances = await self.pool.run(self.facility.list_instances, self.unit_prefix,
                                        timeout=self.control_timeout, operation="list",
                                        target=f"{self.unit_prefix}-*")

        discovered = []
        for name, status in sorted(instances.items()):
            session_id = session_id_from_instance(self.unit_prefix, name)
            is_known = session_id is not None and session_id in known
            if is_known and status == ProcessStatus.RUNNING:
                self.adopt(session_id, status)
            discovered.append(DiscoveredInstance(name, session_id, status, is_known))

        logger.info(f"Found {len(discovered)} instance(s) with prefix '{self.unit_prefix}'")
        return discovered
