"""
Metrics abstraction layer for engine observability.

In-memory metrics collection that can be exported later.

IMPORTANT:
- Pure observation only (no side effects on business logic)
- In-memory storage (does not persist across restarts)
"""

from contextlib import contextmanager
from typing import Dict, Any, Optional
from enum import Enum
from collections import defaultdict
import threading
import time


class MetricType(str, Enum):
    """Types of metrics supported"""
    COUNTER = "counter"
    TIMER = "timer"


# Timer samples kept per metric
MAX_TIMER_SAMPLES = 1000


class Metrics:
    """
    In-memory metrics collection system.

    Thread-safe storage for:
    - Counters: monotonically increasing values
    - Timers: duration measurements (ms)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._timers: Dict[str, list] = defaultdict(list)
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def increment_counter(self, name: str, value: float = 1.0, description: str = "") -> None:
        """Increment a counter metric."""
        with self._lock:
            if name not in self._metadata:
                self._metadata[name] = {"type": MetricType.COUNTER, "description": description}
            self._counters[name] += value

    def record_timer(self, name: str, duration_ms: float, description: str = "") -> None:
        """Record a timer metric (duration in milliseconds)."""
        with self._lock:
            if name not in self._metadata:
                self._metadata[name] = {"type": MetricType.TIMER, "description": description}
            samples = self._timers[name]
            if len(samples) >= MAX_TIMER_SAMPLES:
                del samples[0]
            samples.append(duration_ms)

    def get_counter(self, name: str) -> float:
        """Get current counter value"""
        with self._lock:
            return self._counters.get(name, 0.0)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """
        Get timer statistics (min, max, avg, p50, p95).

        Returns an empty dict if no samples were recorded.
        """
        with self._lock:
            values = list(self._timers.get(name, []))
        return _timer_stats(values)

    def get_all_metrics(self) -> Dict[str, Any]:
        """Snapshot of all counters and timer statistics."""
        with self._lock:
            counters = dict(self._counters)
            timers = {name: list(values) for name, values in self._timers.items()}
        return {
            "counters": counters,
            "timers": {name: _timer_stats(values) for name, values in timers.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timers.clear()
            self._metadata.clear()


def _timer_stats(values: list) -> Dict[str, float]:
    if not values:
        return {}
    sorted_values = sorted(values)
    n = len(sorted_values)
    return {
        "min": sorted_values[0],
        "max": sorted_values[-1],
        "avg": sum(sorted_values) / n,
        "p50": sorted_values[int(n * 0.50)],
        "p95": sorted_values[min(n - 1, int(n * 0.95))],
        "count": n,
    }


_metrics: Optional[Metrics] = None


def get_metrics() -> Metrics:
    """Get global metrics instance (singleton)"""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


@contextmanager
def timer(metric_name: str):
    """
    Context manager for timing operations.

    Example:
        with timer("referral_evaluation_ms"):
            ...
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        get_metrics().record_timer(metric_name, (time.perf_counter() - start) * 1000)
