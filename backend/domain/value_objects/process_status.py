"""
ProcessStatus Value Object

Observed status of an external encoding process, as reported by the
process-control facility.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ProcessStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessHandle:
    """
    Mapping from a session to the external process instance backing it.

    Handles are created and replaced only by the ProcessSupervisor; everything
    else refers to a process through ``instance_name``.
    """

    session_id: str
    instance_name: str
    status: ProcessStatus
    started_at: Optional[datetime] = None

    def with_status(self, status: ProcessStatus) -> "ProcessHandle":
        return ProcessHandle(self.session_id, self.instance_name, status, self.started_at)
