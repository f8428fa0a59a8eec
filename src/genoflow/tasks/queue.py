"""Weighted in-memory queue feeding the processing service.

The queue owns its pending list, active-task map and retry counters. They
are mutated only from the event loop and only in code paths without an
``await`` in between, so admission and completion never interleave.
Completion of a task always triggers the next admission attempt.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from genoflow.core.exceptions import JobFailed, ResourcePressure
from genoflow.core.logging import job_id_context
from genoflow.storage.job_store import JobStore
from genoflow.tasks.models import JobStatus, ProcessingJob, TaskSegment
from genoflow.tasks.resources import ResourceMonitor
from genoflow.tasks.weighting import RetryPolicy, batched, calculate_weight, plan_segments

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


class JobProcessor(Protocol):
    async def submit(self, job: ProcessingJob, segment: Optional[TaskSegment] = None) -> Any:
        ...


class TaskQueue:
    """Priority queue with a concurrency cap, memory backoff and retries."""

    def __init__(
        self,
        job_store: JobStore,
        processor: JobProcessor,
        *,
        max_concurrent: int = 3,
        retry_policy: RetryPolicy | None = None,
        monitor: ResourceMonitor | None = None,
        resource_retry_delay: float = 5.0,
        large_task_threshold: int = 5 * GIB,
        segment_bytes: int = 100 * MIB,
        batch_width: int = 3,
        size_lookup: Callable[[list[str]], dict[str, int]] | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Any] | None = None,
    ):
        self.job_store = job_store
        self.processor = processor
        self.max_concurrent = max(1, max_concurrent)
        self.retry_policy = retry_policy or RetryPolicy()
        self.monitor = monitor
        self.resource_retry_delay = resource_retry_delay
        self.large_task_threshold = large_task_threshold
        self.segment_bytes = segment_bytes
        self.batch_width = batch_width
        self._size_lookup = size_lookup
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = self._wrap_sleep(sleep)

        self._queue: list[ProcessingJob] = []
        self._queued_ids: set[str] = set()
        self._active: dict[str, asyncio.Task] = {}
        self._retry_counts: dict[str, int] = {}
        self._retry_tasks: set[asyncio.Task] = set()
        self._deferred: asyncio.TimerHandle | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @staticmethod
    def _wrap_sleep(
        sleep: Callable[[float], Any] | None,
    ) -> Callable[[float], Awaitable[None]]:
        if sleep is None:
            return asyncio.sleep

        async def _async_sleep(seconds: float) -> None:
            result = sleep(seconds)
            if inspect.isawaitable(result):
                await result

        return _async_sleep

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------
    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def is_tracked(self, job_id: str) -> bool:
        """True if the job is queued, running or waiting for a retry."""
        return job_id in self._queued_ids or job_id in self._active or job_id in self._retry_counts

    def retry_count(self, job_id: str) -> int:
        return self._retry_counts.get(job_id, 0)

    def enqueue(self, job: ProcessingJob) -> bool:
        """Add a job and re-sort by weight.

        Returns:
            False if the job is already queued or running, or is terminal
        """
        if self._closed or job.is_terminal:
            return False
        if job.id in self._queued_ids or job.id in self._active:
            return False

        self._queue.append(job)
        self._queued_ids.add(job.id)
        self._sort()
        self._idle.clear()
        logger.debug(
            "Job enqueued",
            extra={"job_id": job.id, "queue_length": len(self._queue), "active": len(self._active)},
        )
        self._pump()
        return True

    def dequeue_next(self) -> Optional[ProcessingJob]:
        """Pop the heaviest job if a slot is free.

        Raises:
            ResourcePressure: If the host is short on memory; the job stays queued
        """
        if not self._queue or len(self._active) >= self.max_concurrent:
            return None
        if self.monitor is not None and self.monitor.is_overloaded():
            raise ResourcePressure(f"Host under memory pressure, {len(self._queue)} jobs waiting")
        job = self._queue.pop(0)
        self._queued_ids.discard(job.id)
        return job

    def cancel(self, job_id: str) -> ProcessingJob:
        """Cancel a pending or processing job.

        A job already forwarded to the processing service keeps running
        there; cancellation only prevents completion bookkeeping and
        further retries.

        Raises:
            JobNotFound: If the job is unknown
            InvalidJobTransition: If the job is completed, failed or cancelled
        """
        job = self.job_store.update_status(job_id, JobStatus.CANCELLED)
        if job_id in self._queued_ids:
            self._queue = [j for j in self._queue if j.id != job_id]
            self._queued_ids.discard(job_id)
        self._retry_counts.pop(job_id, None)
        self._update_idle()
        logger.info("Job cancelled", extra={"job_id": job_id, "was_active": job_id in self._active})
        return job

    async def join(self) -> None:
        """Wait until nothing is queued, running or waiting to retry."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Stop admitting work and cancel running tasks and pending retries."""
        self._closed = True
        if self._deferred is not None:
            self._deferred.cancel()
            self._deferred = None
        tasks = list(self._active.values()) + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._queue.clear()
        self._queued_ids.clear()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def _sort(self) -> None:
        now = self._clock()
        self._queue.sort(key=lambda job: calculate_weight(job, now), reverse=True)

    def _pump(self) -> None:
        while not self._closed:
            try:
                job = self.dequeue_next()
            except ResourcePressure:
                # one deferred admission attempt instead of polling
                self._schedule_deferred_pump()
                break
            if job is None:
                break
            if job.is_terminal:
                continue
            self._active[job.id] = asyncio.create_task(self._run(job), name=f"job-{job.id}")
        self._update_idle()

    def _schedule_deferred_pump(self) -> None:
        if self._deferred is not None:
            return
        logger.info(
            "Deferring admission under resource pressure",
            extra={"delay_seconds": self.resource_retry_delay, "queue_length": len(self._queue)},
        )
        loop = asyncio.get_running_loop()
        self._deferred = loop.call_later(self.resource_retry_delay, self._deferred_pump)

    def _deferred_pump(self) -> None:
        self._deferred = None
        self._pump()

    def _update_idle(self) -> None:
        if not self._queue and not self._active and not self._retry_tasks:
            self._idle.set()
        else:
            self._idle.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _run(self, job: ProcessingJob) -> None:
        token = job_id_context.set(job.id)
        try:
            await self._execute(job)
        except JobFailed as e:
            logger.error(
                "Job failed permanently",
                extra={"job_id": e.job_id, "attempts": e.attempts, "error": e.last_error},
            )
        finally:
            job_id_context.reset(token)
            self._active.pop(job.id, None)
            self._pump()

    async def _execute(self, job: ProcessingJob) -> None:
        attempt = self._retry_counts.get(job.id, 0)
        if job.status == JobStatus.PENDING:
            self.job_store.update_status(job.id, JobStatus.PROCESSING)
        elif job.status != JobStatus.PROCESSING:
            return

        file_sizes = await self._resolve_file_sizes(job)
        total_size = sum(file_sizes.values()) or job.total_size
        self.job_store.start_execution(job, file_sizes, attempt)
        logger.info(
            "Job started",
            extra={"job_id": job.id, "attempt": attempt, "total_size": total_size},
        )

        try:
            if total_size > self.large_task_threshold:
                await self._process_large(job, total_size)
            else:
                await self.processor.submit(job)
        except asyncio.CancelledError:
            self.job_store.finish_execution(job.id, False, "interrupted")
            raise
        except Exception as e:
            self._handle_failure(job, e)
            return

        if job.status == JobStatus.CANCELLED:
            self.job_store.finish_execution(job.id, False, "cancelled")
            return

        self.job_store.update_status(job.id, JobStatus.COMPLETED)
        self.job_store.finish_execution(job.id, True)
        self._retry_counts.pop(job.id, None)
        logger.info("Job completed", extra={"job_id": job.id, "attempt": attempt})

    async def _process_large(self, job: ProcessingJob, total_size: int) -> None:
        """Process a large job as batches of concurrent segment sub-tasks.

        Progress is recorded after each batch; any failed segment fails the
        attempt once its batch has settled.
        """
        segments = plan_segments(total_size, self.segment_bytes)
        done = 0
        logger.info(
            "Splitting large job",
            extra={"job_id": job.id, "segments": len(segments), "batch_width": self.batch_width},
        )
        for batch in batched(segments, self.batch_width):
            if job.status == JobStatus.CANCELLED:
                return
            results = await asyncio.gather(
                *(self.processor.submit(job, segment) for segment in batch),
                return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                raise errors[0]
            done += len(batch)
            self.job_store.set_progress(job.id, done * 100 // len(segments))

    def _handle_failure(self, job: ProcessingJob, error: Exception) -> None:
        """Record a failed attempt and schedule a retry.

        Raises:
            JobFailed: If the retry budget is spent; the job is marked failed first
        """
        attempt = self._retry_counts.get(job.id, 0)
        message = str(error) or type(error).__name__
        self.job_store.finish_execution(job.id, False, message)

        if job.status == JobStatus.CANCELLED:
            self._retry_counts.pop(job.id, None)
            return

        if self.retry_policy.should_retry(attempt):
            delay = self.retry_policy.delay(attempt)
            self._retry_counts[job.id] = attempt + 1
            logger.warning(
                "Job attempt failed, retrying",
                extra={
                    "job_id": job.id,
                    "attempt": attempt + 1,
                    "max_retries": self.retry_policy.max_retries,
                    "delay_seconds": delay,
                    "error": message,
                },
            )
            task = asyncio.create_task(self._retry_later(job, delay), name=f"retry-{job.id}")
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_done)
            return

        self._retry_counts.pop(job.id, None)
        self.job_store.update_status(job.id, JobStatus.FAILED, error_message=message)
        raise JobFailed(job.id, attempt + 1, message) from error

    async def _retry_later(self, job: ProcessingJob, delay: float) -> None:
        await self._sleep(delay)
        if job.status == JobStatus.CANCELLED:
            self._retry_counts.pop(job.id, None)
            return
        self.enqueue(job)

    def _retry_done(self, task: asyncio.Task) -> None:
        self._retry_tasks.discard(task)
        self._update_idle()

    async def _resolve_file_sizes(self, job: ProcessingJob) -> dict[str, int]:
        if self._size_lookup is None:
            return {}
        return await asyncio.to_thread(self._size_lookup, job.paths)
