"""Process resource metrics used by health checks and interaction records."""

from dataclasses import dataclass
from typing import Protocol

import psutil


@dataclass
class ResourceSnapshot:
    """Resource usage at one point in time."""

    cpu_percent: float
    memory_percent: float
    memory_mb: float


class MetricsSource(Protocol):
    """Provider of resource usage figures."""

    def snapshot(self) -> ResourceSnapshot:
        """Current resource usage."""
        ...


class ProcessMetricsSource:
    """Resource usage of the current process via psutil.

    CPU is measured since the previous call, so the call never blocks.
    """

    def __init__(self) -> None:
        self._process = psutil.Process()
        # First reading only establishes the baseline
        self._process.cpu_percent(interval=None)

    def snapshot(self) -> ResourceSnapshot:
        memory_info = self._process.memory_info()
        return ResourceSnapshot(
            cpu_percent=self._process.cpu_percent(interval=None),
            memory_percent=self._process.memory_percent(),
            memory_mb=memory_info.rss / (1024**2),
        )


class StaticMetricsSource:
    """Fixed resource figures, adjustable by tests."""

    def __init__(self, cpu_percent: float = 10.0, memory_percent: float = 20.0, memory_mb: float = 128.0):
        self.cpu_percent = cpu_percent
        self.memory_percent = memory_percent
        self.memory_mb = memory_mb

    def snapshot(self) -> ResourceSnapshot:
        return ResourceSnapshot(
            cpu_percent=self.cpu_percent,
            memory_percent=self.memory_percent,
            memory_mb=self.memory_mb,
        )
