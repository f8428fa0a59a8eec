"""Time-windowed admission of pending jobs into the task queue."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from genoflow.storage.job_store import JobStore
from genoflow.tasks.queue import TaskQueue
from genoflow.tasks.resources import ResourceMonitor

logger = logging.getLogger(__name__)


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


@dataclass(frozen=True)
class AdmissionWindow:
    """Time-of-day range during which new jobs may be admitted.

    ``start`` after ``end`` means the window crosses midnight
    (e.g. 22:00-06:00). Times are compared in the timezone of ``now``.
    """

    start: time
    end: time
    closing_margin: timedelta = timedelta(minutes=15)

    def is_open(self, now: datetime) -> bool:
        current = _minutes(now.time())
        start, end = _minutes(self.start), _minutes(self.end)
        if start == end:
            return True
        if start < end:
            return start <= current < end
        return current >= start or current < end

    def minutes_until_close(self, now: datetime) -> Optional[int]:
        """Minutes left in the open window, or None if closed."""
        if not self.is_open(now):
            return None
        start, end = _minutes(self.start), _minutes(self.end)
        if start == end:
            return None
        current = _minutes(now.time())
        return (end - current) % (24 * 60)

    def is_closing(self, now: datetime) -> bool:
        """True within ``closing_margin`` of the window end."""
        remaining = self.minutes_until_close(now)
        return remaining is not None and remaining <= self.closing_margin.total_seconds() // 60

    def accepts_new_jobs(self, now: datetime) -> bool:
        return self.is_open(now) and not self.is_closing(now)


class Scheduler:
    """Moves aged pending jobs into the TaskQueue on a fixed cadence.

    ``tick`` is the periodic admission pass; ``open_window`` is the bulk
    load at window start that ignores job age. ``run`` drives both from a
    single ticker so the policy stays testable through ``tick``/``open_window``
    with an explicit ``now``.
    """

    def __init__(
        self,
        job_store: JobStore,
        queue: TaskQueue,
        window: AdmissionWindow,
        *,
        monitor: ResourceMonitor | None = None,
        interval_seconds: float = 300,
        min_queue_age: timedelta = timedelta(minutes=5),
        batch_limit: int = 10,
        tz: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ):
        self.job_store = job_store
        self.queue = queue
        self.window = window
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.min_queue_age = min_queue_age
        self.batch_limit = batch_limit
        self.tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: asyncio.Task | None = None
        self._was_open = False

    def now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    def tick(self, now: datetime | None = None) -> int:
        """Admit pending jobs older than ``min_queue_age``.

        Returns:
            Number of jobs handed to the queue
        """
        now = now or self.now()
        if not self.window.is_open(now):
            logger.debug("Outside admission window, not admitting jobs", extra={"now": now.isoformat()})
            return 0
        if self._overloaded():
            return 0
        if self.window.is_closing(now):
            logger.info("Admission window closing, not admitting new jobs")
            return 0

        cutoff = now - self.min_queue_age
        return self._admit(self.job_store.list_pending(created_before=cutoff, limit=self.batch_limit))

    def open_window(self, now: datetime | None = None) -> int:
        """Bulk-load pending jobs at window start, regardless of age."""
        if self._overloaded():
            return 0
        logger.info("Admission window opened, loading pending jobs")
        return self._admit(self.job_store.list_pending(limit=self.batch_limit))

    def _overloaded(self) -> bool:
        if self.monitor is not None and self.monitor.is_overloaded():
            logger.info("Resource pressure, skipping scheduling pass")
            return True
        return False

    def _admit(self, jobs) -> int:
        if not jobs:
            logger.debug("No pending jobs to admit")
            return 0
        admitted = sum(1 for job in jobs if self.queue.enqueue(job))
        logger.info(
            "Pending jobs admitted",
            extra={"found": len(jobs), "admitted": admitted},
        )
        return admitted

    def poll(self, now: datetime | None = None) -> int:
        """One ticker step: bulk-load on the closed->open edge, else a regular tick.

        The first poll of a process that starts inside the window counts as
        an opening. A bulk load skipped under resource pressure stays pending
        until a later poll can run it.
        """
        now = now or self.now()
        is_open = self.window.is_open(now)
        opening = is_open and not self._was_open
        if opening and self._overloaded():
            return 0
        self._was_open = is_open
        if opening:
            return self.open_window(now)
        return self.tick(now)

    async def run(self) -> None:
        logger.info(
            "Scheduler started",
            extra={
                "interval_seconds": self.interval_seconds,
                "window_start": self.window.start.isoformat(),
                "window_end": self.window.end.isoformat(),
            },
        )
        while True:
            try:
                self.poll()
            except Exception as e:
                logger.error(
                    "Scheduling pass failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                    exc_info=True,
                )
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="scheduler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
