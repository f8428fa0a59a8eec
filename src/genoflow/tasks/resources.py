"""Host resource pressure checks."""

import logging
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    used_fraction: float
    available_mb: float
    process_rss_mb: float
    is_overloaded: bool


class ResourceMonitor:
    """Reports memory pressure against a used-fraction threshold."""

    def __init__(self, threshold: float = 0.8):
        self.threshold = threshold
        self.process = psutil.Process()

    def check(self) -> ResourceSnapshot:
        memory = psutil.virtual_memory()
        used_fraction = memory.percent / 100
        snapshot = ResourceSnapshot(
            used_fraction=used_fraction,
            available_mb=memory.available / 1024 / 1024,
            process_rss_mb=self.process.memory_info().rss / 1024 / 1024,
            is_overloaded=used_fraction > self.threshold,
        )
        if snapshot.is_overloaded:
            logger.warning(
                "Memory pressure above threshold",
                extra={"used_fraction": round(used_fraction, 3), "threshold": self.threshold},
            )
        return snapshot

    def is_overloaded(self) -> bool:
        return self.check().is_overloaded
