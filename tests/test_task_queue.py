"""Tests for the weighted task queue."""

import asyncio
import logging
from unittest.mock import patch

import pytest

from genoflow.core.exceptions import DownstreamUnavailable, InvalidJobTransition, ResourcePressure
from genoflow.tasks.models import JobStatus
from genoflow.tasks.queue import TaskQueue
from genoflow.tasks.weighting import RetryPolicy


class RecordingProcessor:
    """Processor double that records calls and can block or fail."""

    def __init__(self, gate: asyncio.Event | None = None, failures: int = 0):
        self.gate = gate
        self.failures = failures
        self.calls = []
        self.running = 0
        self.max_running = 0

    async def submit(self, job, segment=None):
        self.calls.append((job.id, segment.index if segment else None))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.failures:
                self.failures -= 1
                raise DownstreamUnavailable("processing service down", status_code=503)
        finally:
            self.running -= 1
        return {"ok": True}


def make_queue(job_store, processor, **kwargs) -> TaskQueue:
    kwargs.setdefault("sleep", lambda seconds: None)
    return TaskQueue(job_store, processor, **kwargs)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_concurrency_cap(job_store, make_job):
    """No more than max_concurrent jobs run at once."""
    gate = asyncio.Event()
    processor = RecordingProcessor(gate=gate)
    queue = make_queue(job_store, processor, max_concurrent=3)
    jobs = [make_job() for _ in range(5)]

    for job in jobs:
        queue.enqueue(job)
    await settle()

    assert queue.active_count == 3
    assert queue.pending_count == 2

    gate.set()
    await asyncio.wait_for(queue.join(), timeout=2)

    assert processor.max_running == 3
    assert all(job_store.get(j.id).status == JobStatus.COMPLETED for j in jobs)


@pytest.mark.asyncio
async def test_completion_admits_next_job(job_store, make_job):
    """Finishing one job starts the next queued one."""
    processor = RecordingProcessor()
    queue = make_queue(job_store, processor, max_concurrent=1)
    jobs = [make_job() for _ in range(3)]

    for job in jobs:
        queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert processor.max_running == 1
    assert len(processor.calls) == 3


@pytest.mark.asyncio
async def test_heavier_job_runs_first(job_store, make_job):
    """Queued jobs are admitted by weight."""
    gate = asyncio.Event()
    processor = RecordingProcessor(gate=gate)
    queue = make_queue(job_store, processor, max_concurrent=1)
    blocker = make_job()
    low = make_job(priority=0)
    high = make_job(priority=5)

    queue.enqueue(blocker)
    queue.enqueue(low)
    queue.enqueue(high)
    gate.set()
    await asyncio.wait_for(queue.join(), timeout=2)

    assert [call[0] for call in processor.calls] == [blocker.id, high.id, low.id]


@pytest.mark.asyncio
async def test_enqueue_deduplicates(job_store, make_job):
    gate = asyncio.Event()
    queue = make_queue(job_store, RecordingProcessor(gate=gate), max_concurrent=1)
    running = make_job()
    waiting = make_job()

    assert queue.enqueue(running) is True
    assert queue.enqueue(waiting) is True
    assert queue.enqueue(running) is False
    assert queue.enqueue(waiting) is False

    gate.set()
    await asyncio.wait_for(queue.join(), timeout=2)


@pytest.mark.asyncio
async def test_terminal_job_not_enqueued(job_store, make_job):
    queue = make_queue(job_store, RecordingProcessor())
    job = make_job()
    job_store.update_status(job.id, JobStatus.CANCELLED)

    assert queue.enqueue(job) is False
    assert queue.pending_count == 0


@pytest.mark.asyncio
async def test_resource_pressure_defers_admission(job_store, make_job, fake_monitor):
    """Under memory pressure the job waits for one deferred admission attempt."""
    monitor = fake_monitor
    monitor.overloaded = True
    processor = RecordingProcessor()
    queue = make_queue(job_store, processor, monitor=monitor, resource_retry_delay=0.01)
    job = make_job()

    queue.enqueue(job)
    await settle()

    assert queue.active_count == 0
    assert queue.pending_count == 1
    assert job.status == JobStatus.PENDING

    monitor.overloaded = False
    await asyncio.wait_for(queue.join(), timeout=2)

    assert job.status == JobStatus.COMPLETED
    assert processor.calls == [(job.id, None)]


@pytest.mark.asyncio
async def test_retries_with_backoff_then_fails(job_store, make_job):
    """Three retries with 1s, 2s and 4s delays, then the job fails with its last error."""
    delays = []
    processor = RecordingProcessor(failures=10)
    queue = make_queue(
        job_store,
        processor,
        retry_policy=RetryPolicy(max_retries=3, base_delay_seconds=1.0),
        sleep=delays.append,
    )
    job = make_job()

    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert delays == [1.0, 2.0, 4.0]
    assert len(processor.calls) == 4
    assert job.status == JobStatus.FAILED
    assert job.error_message == "processing service down"
    executions = job_store.list_executions(job.id)
    assert [log.attempt for log in executions] == [0, 1, 2, 3]
    assert all(log.success is False for log in executions)
    assert not queue.is_tracked(job.id)


@pytest.mark.asyncio
async def test_exhausted_retries_logged_as_job_failure(job_store, make_job, caplog):
    queue = make_queue(job_store, RecordingProcessor(failures=10), retry_policy=RetryPolicy(max_retries=1))
    job = make_job()

    with caplog.at_level(logging.ERROR, logger="genoflow.tasks.queue"):
        queue.enqueue(job)
        await asyncio.wait_for(queue.join(), timeout=2)

    failures = [r for r in caplog.records if r.getMessage() == "Job failed permanently"]
    assert len(failures) == 1
    assert failures[0].attempts == 2
    assert failures[0].error == "processing service down"


@pytest.mark.asyncio
async def test_dequeue_signals_resource_pressure(job_store, make_job, fake_monitor):
    """Under pressure the next job stays queued and the caller gets a deferral signal."""
    queue = make_queue(job_store, RecordingProcessor(), monitor=fake_monitor)
    fake_monitor.overloaded = True
    waiting = make_job()
    queue.enqueue(waiting)

    with pytest.raises(ResourcePressure):
        queue.dequeue_next()

    assert queue.pending_count == 1

    fake_monitor.overloaded = False
    assert queue.dequeue_next() is waiting
    await queue.shutdown()


@pytest.mark.asyncio
async def test_retry_then_success(job_store, make_job):
    delays = []
    processor = RecordingProcessor(failures=2)
    queue = make_queue(job_store, processor, sleep=delays.append)
    job = make_job()

    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert delays == [1.0, 2.0]
    assert job.status == JobStatus.COMPLETED
    assert queue.retry_count(job.id) == 0
    assert job_store.list_executions(job.id)[-1].success is True


@pytest.mark.asyncio
async def test_async_sleep_is_awaited(job_store, make_job):
    """An injected coroutine sleep is awaited between attempts."""
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    queue = make_queue(job_store, RecordingProcessor(failures=1), sleep=fake_sleep)
    job = make_job()

    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert slept == [1.0]
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_pending_job(job_store, make_job):
    """A queued job can be cancelled before it starts."""
    gate = asyncio.Event()
    processor = RecordingProcessor(gate=gate)
    queue = make_queue(job_store, processor, max_concurrent=1)
    running = make_job()
    waiting = make_job()
    queue.enqueue(running)
    queue.enqueue(waiting)

    cancelled = queue.cancel(waiting.id)

    assert cancelled.status == JobStatus.CANCELLED
    assert queue.pending_count == 0

    gate.set()
    await asyncio.wait_for(queue.join(), timeout=2)

    assert [call[0] for call in processor.calls] == [running.id]


@pytest.mark.asyncio
async def test_cancel_during_retry_wait_stops_retries(job_store, make_job):
    """Cancelling while a retry is pending prevents further attempts."""
    processor = RecordingProcessor(failures=10)
    job = make_job()
    queue = None

    def cancel_on_sleep(seconds):
        queue.cancel(job.id)

    queue = make_queue(job_store, processor, sleep=cancel_on_sleep)
    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert len(processor.calls) == 1
    assert job.status == JobStatus.CANCELLED
    assert not queue.is_tracked(job.id)


@pytest.mark.asyncio
async def test_cancel_running_job_skips_completion(job_store, make_job):
    gate = asyncio.Event()
    queue = make_queue(job_store, RecordingProcessor(gate=gate))
    job = make_job()
    queue.enqueue(job)
    await settle()

    queue.cancel(job.id)
    gate.set()
    await asyncio.wait_for(queue.join(), timeout=2)

    assert job.status == JobStatus.CANCELLED
    assert job_store.list_executions(job.id)[-1].error_message == "cancelled"


@pytest.mark.asyncio
async def test_cancel_completed_job_rejected(job_store, make_job):
    queue = make_queue(job_store, RecordingProcessor())
    job = make_job()
    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    with pytest.raises(InvalidJobTransition):
        queue.cancel(job.id)


@pytest.mark.asyncio
async def test_large_job_runs_in_segment_batches(job_store, make_job):
    """Jobs above the threshold run as batches of segment sub-tasks."""
    processor = RecordingProcessor()
    queue = make_queue(
        job_store,
        processor,
        large_task_threshold=1000,
        segment_bytes=100,
        batch_width=3,
    )
    job = make_job(total_size=1050)

    with patch.object(job_store, "set_progress", wraps=job_store.set_progress) as progress:
        queue.enqueue(job)
        await asyncio.wait_for(queue.join(), timeout=2)

    assert [call[1] for call in processor.calls] == list(range(11))
    assert processor.max_running <= 3
    assert [c.args[1] for c in progress.call_args_list] == [27, 54, 81, 100]
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100


@pytest.mark.asyncio
async def test_large_job_segment_failure_fails_attempt(job_store, make_job):
    processor = RecordingProcessor(failures=1)
    queue = make_queue(
        job_store,
        processor,
        retry_policy=RetryPolicy(max_retries=0),
        large_task_threshold=1000,
        segment_bytes=100,
        batch_width=3,
    )
    job = make_job(total_size=1050)

    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    assert job.status == JobStatus.FAILED
    assert len(processor.calls) == 3


@pytest.mark.asyncio
async def test_file_sizes_resolved_for_execution_log(job_store, make_job):
    queue = make_queue(
        job_store,
        RecordingProcessor(),
        size_lookup=lambda paths: {p: 123 for p in paths},
    )
    job = make_job(file_paths="a.h5;b.npy", total_size=0)

    queue.enqueue(job)
    await asyncio.wait_for(queue.join(), timeout=2)

    log = job_store.list_executions(job.id)[0]
    assert log.file_sizes == {"a.h5": 123, "b.npy": 123}
    assert log.total_size == 246


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(job_store, make_job):
    gate = asyncio.Event()
    queue = make_queue(job_store, RecordingProcessor(gate=gate))
    job = make_job()
    queue.enqueue(job)
    await settle()

    await queue.shutdown()

    assert queue.active_count == 0
    assert queue.enqueue(make_job()) is False
    assert job_store.list_executions(job.id)[-1].error_message == "interrupted"
