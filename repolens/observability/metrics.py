"""In-process metrics for indexing and retrieval."""

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

from repolens.observability.logging import get_logger

logger = get_logger(__name__)

# Metric names
FILES_INDEXED = "files_indexed"
FILES_SKIPPED = "files_skipped"
CHUNKS_CREATED = "chunks_created"
EMBEDDING_BATCHES = "embedding_batches"
EMBEDDING_TOKENS = "embedding_tokens"
RETRIES = "upstream_retries"
JOBS_FINISHED = "jobs_finished"
ACTIVE_JOBS = "active_jobs"
JOB_DURATION = "job_duration_seconds"
RETRIEVAL_LATENCY = "retrieval_latency_seconds"


@dataclass
class TimerSummary:
    """Summary statistics for a timer."""
    count: int
    total: float
    min: float
    max: float
    avg: float
    p95: float


class MetricsCollector:
    """Thread-safe counters, gauges and timers."""

    def __init__(self, max_history: int = 1000):
        """Initialize metrics collector.

        Args:
            max_history: Maximum number of timer samples kept per metric
        """
        self.max_history = max_history
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_history))
        self._lock = Lock()

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric.

        Args:
            name: Counter name
            value: Value to increment by
            labels: Optional labels for the metric
        """
        with self._lock:
            self._counters[self._make_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._gauges[self._make_key(name, labels)] = value

    def record_timer(self, name: str, duration: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._timers[self._make_key(name, labels)].append(duration)

    @contextmanager
    def time_operation(self, name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.record_timer(name, time.perf_counter() - start_time, labels)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(self._make_key(name, labels))

    def get_timer_summary(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[TimerSummary]:
        """Get timer summary statistics, or None when nothing was recorded."""
        with self._lock:
            values = self._timers.get(self._make_key(name, labels))
            if not values:
                return None
            return self._summarize(list(values))

    def get_summary(self) -> Dict[str, Any]:
        """Snapshot of every metric as plain data."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timers": {
                    key: asdict(self._summarize(list(values)))
                    for key, values in self._timers.items() if values
                },
            }

    def reset_metrics(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()
        logger.info("All metrics reset")

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    @staticmethod
    def _summarize(values: List[float]) -> TimerSummary:
        ordered = sorted(values)
        count = len(ordered)
        total = sum(ordered)
        return TimerSummary(
            count=count,
            total=total,
            min=ordered[0],
            max=ordered[-1],
            avg=total / count,
            p95=ordered[int(0.95 * (count - 1))],
        )


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()

    return _metrics_collector
