"""Pure scheduling arithmetic: job weight, retry backoff, large-job segmentation."""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Sequence

from genoflow.tasks.models import ProcessingJob, TaskSegment

BASE_WEIGHT = 1.0
SIZE_FACTOR = 0.3
PRIORITY_FACTOR = 0.4
TIME_FACTOR = 0.3

BYTES_PER_MB = 1024 * 1024
MIN_SIZE_MB = 0.001  # log10 floor for empty or unknown sizes


def calculate_weight(job: ProcessingJob, now: datetime | None = None) -> float:
    """Composite scheduling weight; higher runs first.

    weight = 1 + 0.3*log10(sizeMB) + 0.4*priority + 0.3*log10(1 + waitHours)

    Wait time keeps growing while a job sits in the queue, so weights go
    stale between sorts. That is accepted: the ordering is advisory.
    """
    now = now or datetime.now(timezone.utc)
    size_mb = max(job.total_size / BYTES_PER_MB, MIN_SIZE_MB)
    wait_hours = max((now - job.created_at).total_seconds() / 3600, 0.0)

    size_score = math.log10(size_mb)
    priority_score = job.priority
    time_score = math.log10(1 + wait_hours)

    return (
        BASE_WEIGHT
        + size_score * SIZE_FACTOR
        + priority_score * PRIORITY_FACTOR
        + time_score * TIME_FACTOR
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``delay(attempt) = 2**attempt * base``."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt + 1`` (attempt is 0-based)."""
        return (2 ** attempt) * self.base_delay_seconds

    def should_retry(self, attempt: int) -> bool:
        """True while fewer than ``max_retries`` retries have been used."""
        return attempt < self.max_retries


def plan_segments(total_size: int, segment_bytes: int) -> list[TaskSegment]:
    """Split ``total_size`` bytes into fixed-size logical segments."""
    if segment_bytes <= 0:
        raise ValueError("segment_bytes must be positive")
    count = math.ceil(total_size / segment_bytes)
    return [
        TaskSegment(index=i, start=i * segment_bytes, end=min((i + 1) * segment_bytes, total_size))
        for i in range(count)
    ]


def batched(segments: Sequence[TaskSegment], width: int) -> Iterator[Sequence[TaskSegment]]:
    """Yield consecutive batches of at most ``width`` segments."""
    if width <= 0:
        raise ValueError("width must be positive")
    for i in range(0, len(segments), width):
        yield segments[i:i + width]
