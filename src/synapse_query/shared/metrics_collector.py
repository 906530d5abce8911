"""
Metrics collection for Synapse Query.

In-process counters, gauges and histograms for the cache, queue,
pipeline and pagination layers. Nothing is exported; callers read
values through the collector snapshot.
"""
import threading
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import get_settings

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Counter:
    """Counter metric that only increases."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the counter."""
        if not get_settings().metrics_enabled:
            return
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Union[int, float]:
        """Get current value for a label set, or the total when no labels are given."""
        with self._lock:
            if not labels:
                return sum(self._values.values())
            return self._values.get(_label_key(labels), 0)

    def reset(self):
        """Reset counter to zero."""
        with self._lock:
            self._values.clear()


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._value: Union[int, float] = 0
        self._lock = threading.Lock()

    def set(self, value: Union[int, float]):
        """Set the gauge value."""
        if not get_settings().metrics_enabled:
            return
        with self._lock:
            self._value = value

    def increment(self, amount: Union[int, float] = 1):
        if not get_settings().metrics_enabled:
            return
        with self._lock:
            self._value += amount

    def decrement(self, amount: Union[int, float] = 1):
        if not get_settings().metrics_enabled:
            return
        with self._lock:
            self._value -= amount

    def get_value(self) -> Union[int, float]:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self):
        with self._lock:
            self._value = 0


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, name: str, description: str = "", buckets: Optional[List[float]] = None):
        self.name = name
        self.description = description
        self.buckets = buckets or [0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]):
        """Observe a value."""
        if not get_settings().metrics_enabled:
            return
        with self._lock:
            self._sum += value
            self._count += 1

            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def time(self) -> "TimerContext":
        """Context manager observing the elapsed time of a block."""
        return TimerContext(self)

    def get_statistics(self) -> Dict[str, Any]:
        """Get histogram statistics."""
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }

    def reset(self):
        with self._lock:
            self._bucket_counts = {bucket: 0 for bucket in self.buckets}
            self._sum = 0.0
            self._count = 0


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, histogram: Histogram):
        self.histogram = histogram
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.histogram.observe(time.perf_counter() - self.start_time)


class MetricsCollector:
    """Central metrics registry for the engine."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.cache_invalidations = Counter(
            'cache_invalidations_total', 'Entries marked stale by tag invalidation'
        )
        self.queue_tasks_settled = Counter(
            'queue_tasks_settled_total', 'Queue tasks settled, labelled by status'
        )
        self.queue_tasks_running = Gauge(
            'queue_tasks_running', 'Queue tasks currently holding a permit'
        )
        self.pipeline_middleware_seconds = Histogram(
            'pipeline_middleware_seconds', 'Duration of composed middleware chains'
        )
        self.pagination_fetches = Counter(
            'pagination_fetches_total', 'Page fetches, labelled by direction and outcome'
        )

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def snapshot(self) -> Dict[str, Any]:
        """Current values of every registered metric."""
        return {
            'cache_invalidations_total': self.cache_invalidations.get_value(),
            'queue_tasks_settled_total': self.queue_tasks_settled.get_value(),
            'queue_tasks_running': self.queue_tasks_running.get_value(),
            'pipeline_middleware_seconds': self.pipeline_middleware_seconds.get_statistics(),
            'pagination_fetches_total': self.pagination_fetches.get_value(),
        }

    def reset(self):
        """Reset every metric (used between tests)."""
        self.cache_invalidations.reset()
        self.queue_tasks_settled.reset()
        self.queue_tasks_running.reset()
        self.pipeline_middleware_seconds.reset()
        self.pagination_fetches.reset()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
