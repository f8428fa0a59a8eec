"""Processing job domain models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from genoflow.core.exceptions import InvalidJobTransition

FILE_PATH_DELIMITER = ";"
MIN_DATA_FORMAT = 0
MAX_DATA_FORMAT = 4


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True if ``current -> target`` is an allowed status edge."""
    return target in ALLOWED_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingJob:
    """A unit of requested post-upload processing."""

    project_id: str
    user_id: str
    name: str
    file_paths: str  # ";"-delimited physical paths
    task_type: str
    data_format: int = 0
    priority: int = 0
    total_size: int = 0  # bytes
    created_at: datetime = field(default_factory=_utcnow)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error_message: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def paths(self) -> list[str]:
        """Split ``file_paths`` into a list, dropping blanks."""
        return [p.strip() for p in self.file_paths.split(FILE_PATH_DELIMITER) if p.strip()]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, target: JobStatus, now: datetime | None = None) -> None:
        """Move to ``target`` status.

        Raises:
            InvalidJobTransition: If the edge is not allowed
        """
        if not can_transition(self.status, target):
            raise InvalidJobTransition(self.id, self.status.value, target.value)
        self.status = target
        self.updated_at = now or _utcnow()


@dataclass
class ExecutionLog:
    """One row per job attempt."""

    job_id: str
    task_type: str
    total_size: int
    file_sizes: dict[str, int]
    start_time: datetime
    attempt: int = 0
    end_time: Optional[datetime] = None
    execution_seconds: Optional[float] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TaskSegment:
    """Logical byte range of a large job, processed as one sub-task."""

    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start
