"""Processing job and execution log store."""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from genoflow.core.exceptions import JobNotFound
from genoflow.tasks.models import ExecutionLog, JobStatus, ProcessingJob

logger = logging.getLogger(__name__)


class JobStore:
    """In-memory store for processing jobs and their execution logs.

    Jobs are mutated only through this store so status changes always pass
    the transition check in ``ProcessingJob.transition_to``.
    """

    def __init__(self):
        self._jobs: Dict[str, ProcessingJob] = {}
        self._executions: Dict[str, List[ExecutionLog]] = {}
        self._lock = threading.RLock()

    def create(self, job: ProcessingJob) -> ProcessingJob:
        """Store a new job."""
        with self._lock:
            self._jobs[job.id] = job
        logger.info(
            "Job created",
            extra={"job_id": job.id, "task_type": job.task_type, "priority": job.priority},
        )
        return job

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def require(self, job_id: str) -> ProcessingJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_pending(self, created_before: datetime | None = None, limit: int | None = None) -> list[ProcessingJob]:
        """List pending jobs, highest priority first, oldest first within a priority.

        Args:
            created_before: Only jobs created at or before this instant
            limit: Maximum number of jobs returned
        """
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and (created_before is None or job.created_at <= created_before)
            ]
        jobs.sort(key=lambda j: (-j.priority, j.created_at))
        return jobs[:limit] if limit is not None else jobs

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: str | None = None,
    ) -> ProcessingJob:
        """Transition a job's status.

        Raises:
            JobNotFound: If the job is unknown
            InvalidJobTransition: If the edge is not allowed
        """
        with self._lock:
            job = self.require(job_id)
            job.transition_to(status)
            if error_message is not None:
                job.error_message = error_message
            if status == JobStatus.COMPLETED:
                job.progress = 100
        logger.info(
            "Job status updated",
            extra={"job_id": job_id, "status": status.value},
        )
        return job

    def set_progress(self, job_id: str, progress: int) -> None:
        """Record progress percentage. Progress never moves backwards."""
        with self._lock:
            job = self.require(job_id)
            job.progress = max(job.progress, min(100, max(0, progress)))
            job.updated_at = datetime.now(timezone.utc)

    def start_execution(self, job: ProcessingJob, file_sizes: dict[str, int], attempt: int = 0) -> ExecutionLog:
        """Open an execution log row for a job attempt."""
        log = ExecutionLog(
            job_id=job.id,
            task_type=job.task_type,
            total_size=sum(file_sizes.values()) if file_sizes else job.total_size,
            file_sizes=dict(file_sizes),
            start_time=datetime.now(timezone.utc),
            attempt=attempt,
        )
        with self._lock:
            self._executions.setdefault(job.id, []).append(log)
        return log

    def finish_execution(self, job_id: str, success: bool, error_message: str | None = None) -> Optional[ExecutionLog]:
        """Close the most recent open execution log row of a job."""
        with self._lock:
            open_logs = [log for log in self._executions.get(job_id, []) if log.end_time is None]
            if not open_logs:
                return None
            log = open_logs[-1]
            log.end_time = datetime.now(timezone.utc)
            log.execution_seconds = (log.end_time - log.start_time).total_seconds()
            log.success = success
            log.error_message = error_message
            return log

    def list_executions(self, job_id: str) -> list[ExecutionLog]:
        with self._lock:
            return list(self._executions.get(job_id, []))
