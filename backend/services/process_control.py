"""
Process Control Facilities

Thin request/response wrappers around whatever actually runs the encoding
processes. Every method is blocking and bounded by a timeout; the supervisor
calls them through the WorkerPool.

Backends:
- SystemdProcessControl: transient units via systemd-run (reference deployment).
  systemd restarts crashed encoders on its own (Restart=on-failure); a unit
  waiting out RestartSec is reported as failed.
- LocalProcessControl: direct child processes tracked by pidfiles + psutil,
  for hosts without systemd (development, containers).
"""
import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from config.app_config import AppConfig
from constants import SupervisorConfig
from domain.value_objects.process_status import ProcessStatus
from exceptions import ProcessControlError

logger = logging.getLogger(__name__)


class ProcessControl(ABC):
    """Interface for a named-process facility"""

    @abstractmethod
    def start(self, instance_name: str, argv: List[str]) -> None:
        """
        Launch argv as a process registered under instance_name.

        Raises:
            ProcessControlError: If the facility refused or failed to launch it
        """

    @abstractmethod
    def stop(self, instance_name: str) -> bool:
        """
        Stop the named process and wait until it is gone.

        Returns:
            True if something was running, False if it was already absent
        """

    @abstractmethod
    def status(self, instance_name: str) -> ProcessStatus:
        pass

    @abstractmethod
    def list_instances(self, prefix: str) -> Dict[str, ProcessStatus]:
        """
        Enumerate every instance whose name starts with '<prefix>-'.

        Returns:
            {instance name: status}
        """


# ---------------------------------------------------------------------------
# systemd
# ---------------------------------------------------------------------------

_SYSTEMD_ACTIVE_STATES = {
    "active": ProcessStatus.RUNNING,
    "reloading": ProcessStatus.RUNNING,
    "activating": ProcessStatus.RUNNING,
    "deactivating": ProcessStatus.STOPPED,
    "inactive": ProcessStatus.STOPPED,
    "failed": ProcessStatus.FAILED,
}

# Sub-states where the encoder has exited and systemd is waiting to restart it
_SYSTEMD_CRASHED_SUB_STATES = {"auto-restart", "auto-restart-queued"}


def systemd_status(active_state: str, sub_state: str = "") -> ProcessStatus:
    """Map a unit's ActiveState/SubState pair to a ProcessStatus"""
    if sub_state in _SYSTEMD_CRASHED_SUB_STATES:
        return ProcessStatus.FAILED
    return _SYSTEMD_ACTIVE_STATES.get(active_state, ProcessStatus.STOPPED)


class SystemdProcessControl(ProcessControl):
    """Runs each encoder as a transient systemd service unit"""

    def __init__(self, timeout: float = SupervisorConfig.CONTROL_TIMEOUT_SECONDS,
                 restart_sec: int = 5):
        self.timeout = timeout
        self.restart_sec = restart_sec

    @staticmethod
    def unit_name(instance_name: str) -> str:
        return f"{instance_name}.service"

    def _run(self, args: List[str], operation: str, instance_name: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise ProcessControlError(operation, instance_name, f"{args[0]} {operation} timed out after {self.timeout:.1f}s")
        except OSError as e:
            raise ProcessControlError(operation, instance_name, f"Could not run {args[0]}: {e}")

    def start(self, instance_name: str, argv: List[str]) -> None:
        unit = self.unit_name(instance_name)
        # Clear a leftover failed unit with the same name; absent units make this exit non-zero
        self._run(["systemctl", "reset-failed", unit], "reset-failed", instance_name)

        result = self._run(
            [
                "systemd-run",
                "--unit", unit,
                "--property", "Restart=on-failure",
                "--property", f"RestartSec={self.restart_sec}",
                "--collect",
                "--",
                *argv,
            ],
            "start",
            instance_name,
        )
        if result.returncode != 0:
            raise ProcessControlError("start", instance_name, f"systemd-run failed: {result.stderr.strip() or result.returncode}")
        logger.info(f"🚀 Started unit {unit}")

    def stop(self, instance_name: str) -> bool:
        unit = self.unit_name(instance_name)
        if self.status(instance_name) == ProcessStatus.STOPPED:
            return False

        result = self._run(["systemctl", "stop", unit], "stop", instance_name)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "not loaded" in stderr:
                return False
            raise ProcessControlError("stop", instance_name, f"systemctl stop failed: {stderr or result.returncode}")
        logger.info(f"🛑 Stopped unit {unit}")
        return True

    def status(self, instance_name: str) -> ProcessStatus:
        # Unknown units still print ActiveState=inactive, so a non-zero exit is a real error
        result = self._run(
            ["systemctl", "show", "--property", "ActiveState,SubState", self.unit_name(instance_name)],
            "status",
            instance_name,
        )
        if result.returncode != 0:
            raise ProcessControlError("status", instance_name, f"systemctl show failed: {result.stderr.strip() or result.returncode}")

        properties = dict(line.split("=", 1) for line in result.stdout.splitlines() if "=" in line)
        return systemd_status(properties.get("ActiveState", ""), properties.get("SubState", ""))

    def list_instances(self, prefix: str) -> Dict[str, ProcessStatus]:
        result = self._run(
            ["systemctl", "list-units", "--all", "--plain", "--no-legend", "--type=service", f"{prefix}-*"],
            "list",
            f"{prefix}-*",
        )
        if result.returncode != 0:
            raise ProcessControlError("list", f"{prefix}-*", f"systemctl list-units failed: {result.stderr.strip() or result.returncode}")

        instances: Dict[str, ProcessStatus] = {}
        for line in result.stdout.splitlines():
            # UNIT LOAD ACTIVE SUB DESCRIPTION
            columns = line.split()
            if len(columns) < 3 or not columns[0].endswith(".service"):
                continue
            name = columns[0][:-len(".service")]
            if name.startswith(f"{prefix}-"):
                instances[name] = systemd_status(columns[2], columns[3] if len(columns) > 3 else "")
        return instances


# ---------------------------------------------------------------------------
# Local child processes
# ---------------------------------------------------------------------------

class LocalProcessControl(ProcessControl):
    """
    Runs encoders as detached child processes.

    Each instance has a pidfile in run_dir holding the pid and the process
    creation time, so a recycled pid is never mistaken for our process after
    a restart of the orchestrator.
    """

    def __init__(self, run_dir: Path, stop_grace: float = SupervisorConfig.STOP_GRACE_SECONDS):
        self.run_dir = Path(run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.stop_grace = stop_grace
        self._children: Dict[str, subprocess.Popen] = {}

    def _pidfile(self, instance_name: str) -> Path:
        return self.run_dir / f"{instance_name}.pid"

    def _logfile(self, instance_name: str) -> Path:
        return self.run_dir / f"{instance_name}.log"

    def _read_pidfile(self, instance_name: str) -> Optional[dict]:
        path = self._pidfile(instance_name)
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (ValueError, OSError) as e:
            logger.warning(f"Unreadable pidfile {path}: {e}")
            return None

    def _process(self, instance_name: str) -> Optional[psutil.Process]:
        """The live process for an instance, or None if it is gone"""
        record = self._read_pidfile(instance_name)
        if not record:
            return None

        child = self._children.get(instance_name)
        if child is not None and child.poll() is not None:
            # Reap our own exited child so it does not linger as a zombie
            self._children.pop(instance_name, None)
            return None

        try:
            proc = psutil.Process(record["pid"])
            if abs(proc.create_time() - record.get("create_time", 0)) > 1.0:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc
        except (psutil.NoSuchProcess, psutil.AccessDenied, KeyError):
            return None

    def start(self, instance_name: str, argv: List[str]) -> None:
        if self._process(instance_name) is not None:
            raise ProcessControlError("start", instance_name, f"Instance {instance_name} is already running")

        try:
            with open(self._logfile(instance_name), "ab") as log:
                child = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise ProcessControlError("start", instance_name, f"Could not launch {argv[0]}: {e}")

        try:
            create_time = psutil.Process(child.pid).create_time()
        except psutil.NoSuchProcess:
            create_time = 0.0

        self._children[instance_name] = child
        self._pidfile(instance_name).write_text(json.dumps({
            "pid": child.pid,
            "create_time": create_time,
            "argv": argv,
        }))
        logger.info(f"🚀 Started {instance_name} (pid {child.pid})")

    def stop(self, instance_name: str) -> bool:
        proc = self._process(instance_name)
        pidfile = self._pidfile(instance_name)
        if proc is None:
            pidfile.unlink(missing_ok=True)
            return False

        try:
            proc.terminate()
            _, alive = psutil.wait_procs([proc], timeout=self.stop_grace)
            for survivor in alive:
                logger.warning(f"{instance_name} ignored SIGTERM, killing pid {survivor.pid}")
                survivor.kill()
            psutil.wait_procs(alive, timeout=self.stop_grace)
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            raise ProcessControlError("stop", instance_name, f"Not permitted to stop pid {proc.pid}: {e}")

        child = self._children.pop(instance_name, None)
        if child is not None:
            child.poll()
        pidfile.unlink(missing_ok=True)
        logger.info(f"🛑 Stopped {instance_name}")
        return True

    def status(self, instance_name: str) -> ProcessStatus:
        if self._process(instance_name) is not None:
            return ProcessStatus.RUNNING
        # A pidfile without a live process means it exited without being stopped
        if self._pidfile(instance_name).exists():
            return ProcessStatus.FAILED
        return ProcessStatus.STOPPED

    def list_instances(self, prefix: str) -> Dict[str, ProcessStatus]:
        return {
            path.name[:-len(".pid")]: self.status(path.name[:-len(".pid")])
            for path in sorted(self.run_dir.glob(f"{prefix}-*.pid"))
        }


def create_process_control(config: AppConfig) -> ProcessControl:
    """Instantiate the facility selected by PROCESS_BACKEND"""
    if config.process_backend == "local":
        logger.info(f"Using local process control (run dir: {config.run_dir})")
        return LocalProcessControl(config.run_dir)
    logger.info("Using systemd process control")
    return SystemdProcessControl(timeout=config.control_timeout)
