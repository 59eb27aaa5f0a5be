"""Data models for nodetop."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

# Whatever an evaluation pipeline produces; formatters treat it as opaque.
EvaluationResponse = Any


class ProcessStatus(str, Enum):
    """Coarse scheduling state of a process on a node."""

    RUNNING = "running"
    WAITING = "waiting"
    SUSPENDED = "suspended"
    EXITING = "exiting"
    UNKNOWN = "unknown"

    @classmethod
    def from_psutil(cls, status: str | None) -> "ProcessStatus":
        """Map a psutil status string onto a ProcessStatus."""
        return _PSUTIL_STATUSES.get(status or "", cls.UNKNOWN)


_PSUTIL_STATUSES = {
    "running": ProcessStatus.RUNNING,
    "sleeping": ProcessStatus.WAITING,
    "disk-sleep": ProcessStatus.WAITING,
    "idle": ProcessStatus.WAITING,
    "waking": ProcessStatus.WAITING,
    "waiting": ProcessStatus.WAITING,
    "parked": ProcessStatus.WAITING,
    "locked": ProcessStatus.WAITING,
    "stopped": ProcessStatus.SUSPENDED,
    "tracing-stop": ProcessStatus.SUSPENDED,
    "suspended": ProcessStatus.SUSPENDED,
    "zombie": ProcessStatus.EXITING,
    "dead": ProcessStatus.EXITING,
}


@dataclass(slots=True, frozen=True)
class ProcessDescriptor:
    """Immutable snapshot of one process on a node."""

    identity: str  # node-relative, opaque to callers
    reduction_count: int  # CPU work in milliseconds of user + system time
    memory_bytes: int  # Resident set size
    status: ProcessStatus


@dataclass(slots=True, frozen=True)
class MemorySample:
    """One reading of a node memory counter."""

    category: str
    bytes: int
    sequence_index: int


# Fields a node can report for a process, in wire order.
PROCESS_FIELDS = ("reductions", "memory", "status")
