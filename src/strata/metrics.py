"""Metric samples and the controller's in-memory sliding window."""

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class MetricKind(str, Enum):
    """Metrics a scaling policy can track."""

    CPU_UTILIZATION = "cpu_utilization"
    MEMORY_UTILIZATION = "memory_utilization"
    REQUEST_COUNT_PER_TARGET = "request_count_per_target"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MetricSample:
    """One observation from the external metrics source.

    resource_id is the remote id of the measured resource; timestamp is in
    the controller clock's seconds.
    """

    resource_id: str
    metric_kind: str
    value: float
    timestamp: float


class MetricWindow:
    """Sliding window of samples keyed by (resource_id, metric_kind).

    Samples older than window_seconds (relative to the newest "now" passed
    in) are evicted. Nothing here is persisted.
    """

    def __init__(self, window_seconds: float):
        self.window_seconds = window_seconds
        self._series: dict[tuple[str, str], deque[MetricSample]] = {}
        self._lock = threading.Lock()

    def add(self, samples: Iterable[MetricSample]) -> None:
        with self._lock:
            for sample in samples:
                series = self._series.setdefault((sample.resource_id, str(sample.metric_kind)), deque())
                if series and sample.timestamp < series[-1].timestamp:
                    # Keep the series sorted; duplicates from overlapping fetches are dropped.
                    if any(s.timestamp == sample.timestamp for s in series):
                        continue
                    series.append(sample)
                    ordered = sorted(series, key=lambda s: s.timestamp)
                    series.clear()
                    series.extend(ordered)
                elif not series or sample.timestamp > series[-1].timestamp:
                    series.append(sample)

    def evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        with self._lock:
            for key, series in list(self._series.items()):
                while series and series[0].timestamp < cutoff:
                    series.popleft()
                if not series:
                    del self._series[key]

    def latest(self, resource_id: str, metric_kind: str, now: float) -> MetricSample | None:
        """Newest sample still inside the window, or None."""
        self.evict(now)
        with self._lock:
            series = self._series.get((resource_id, str(metric_kind)))
            return series[-1] if series else None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(series) for series in self._series.values())


__all__ = ["MetricKind", "MetricSample", "MetricWindow"]
