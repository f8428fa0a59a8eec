"""Service composition: one instance of every stateful component per app."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from genoflow.core.config import Settings
from genoflow.storage.job_store import JobStore
from genoflow.storage.local import LocalStorageBackend
from genoflow.storage.upload_store import FileStore, UploadStore
from genoflow.tasks.dispatcher import TaskDispatcher
from genoflow.tasks.queue import TaskQueue
from genoflow.tasks.resources import ResourceMonitor
from genoflow.tasks.scheduler import AdmissionWindow, Scheduler
from genoflow.tasks.weighting import RetryPolicy
from genoflow.uploads.chunk_store import ChunkStore
from genoflow.uploads.merger import Merger
from genoflow.uploads.session import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Explicit owner of the registries that HTTP handlers receive by injection."""

    settings: Settings
    backend: LocalStorageBackend
    upload_store: UploadStore
    file_store: FileStore
    job_store: JobStore
    sessions: SessionRegistry
    chunk_store: ChunkStore
    dispatcher: TaskDispatcher
    monitor: ResourceMonitor
    queue: TaskQueue
    scheduler: Scheduler
    _janitor: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self) -> None:
        """Start background loops (scheduler ticker, stale-session janitor)."""
        if self.settings.SCHEDULER_ENABLED:
            self.scheduler.start()
        self._janitor = asyncio.create_task(self._run_janitor(), name="session-janitor")
        logger.info("Background services started", extra={"scheduler": self.settings.SCHEDULER_ENABLED})

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._janitor is not None:
            self._janitor.cancel()
            try:
                await self._janitor
            except asyncio.CancelledError:
                pass
            self._janitor = None
        await self.queue.shutdown()
        await self.dispatcher.aclose()
        logger.info("Background services stopped")

    async def _run_janitor(self) -> None:
        while True:
            await asyncio.sleep(self.settings.SESSION_JANITOR_INTERVAL_SECONDS)
            try:
                await self.chunk_store.evict_stale()
            except Exception as e:
                logger.error(
                    "Stale session eviction failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                    exc_info=True,
                )


def build_container(settings: Settings) -> ServiceContainer:
    """Wire every component from settings."""
    backend = LocalStorageBackend(settings.UPLOAD_ROOT, settings.STAGING_ROOT)
    upload_store = UploadStore()
    file_store = FileStore()
    job_store = JobStore()
    sessions = SessionRegistry()

    merger = Merger(
        backend,
        file_store,
        hash_algorithm=settings.HASH_ALGORITHM,
        duplicate_policy=settings.DUPLICATE_CONTENT_POLICY,
    )
    chunk_store = ChunkStore(
        backend,
        merger,
        sessions,
        upload_store,
        hash_algorithm=settings.HASH_ALGORITHM,
        max_chunk_bytes=settings.max_chunk_bytes,
        max_total_chunks=settings.MAX_TOTAL_CHUNKS,
        session_ttl=timedelta(minutes=settings.UPLOAD_SESSION_TTL_MINUTES),
    )

    dispatcher = TaskDispatcher(settings.PROCESS_SERVICE_URL, timeout=settings.PROCESS_REQUEST_TIMEOUT)
    monitor = ResourceMonitor(settings.RESOURCE_PRESSURE_THRESHOLD)
    queue = TaskQueue(
        job_store,
        dispatcher,
        max_concurrent=settings.MAX_CONCURRENT_TASKS,
        retry_policy=RetryPolicy(settings.MAX_TASK_RETRIES, settings.retry_base_delay_seconds),
        monitor=monitor,
        resource_retry_delay=settings.RESOURCE_RETRY_DELAY_SECONDS,
        large_task_threshold=settings.large_task_threshold_bytes,
        segment_bytes=settings.task_segment_bytes,
        batch_width=settings.TASK_BATCH_WIDTH,
        size_lookup=file_store.sizes_for_paths,
    )
    scheduler = Scheduler(
        job_store,
        queue,
        AdmissionWindow(
            settings.admission_window_start,
            settings.admission_window_end,
            timedelta(minutes=settings.ADMISSION_CLOSING_MARGIN_MINUTES),
        ),
        monitor=monitor,
        interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
        min_queue_age=timedelta(minutes=settings.MIN_QUEUE_AGE_MINUTES),
        batch_limit=settings.SCHEDULER_BATCH_LIMIT,
        tz=settings.SCHEDULER_TIMEZONE,
    )

    return ServiceContainer(
        settings=settings,
        backend=backend,
        upload_store=upload_store,
        file_store=file_store,
        job_store=job_store,
        sessions=sessions,
        chunk_store=chunk_store,
        dispatcher=dispatcher,
        monitor=monitor,
        queue=queue,
        scheduler=scheduler,
    )
