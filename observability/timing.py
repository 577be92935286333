# observability/timing.py
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOW_LOAD_MS = 3000
MAX_QUERIES = 10
LARGE_FAMILY = 20


def timed(fn: Callable[[], T]) -> Tuple[T, float]:
    """Run `fn` and return (result, duration in ms). Exceptions propagate untimed."""
    t0 = time.perf_counter()
    result = fn()
    return result, (time.perf_counter() - t0) * 1000


async def timed_async(call: Awaitable[T]) -> Tuple[T, float]:
    """Await `call` and return (result, duration in ms)."""
    t0 = time.perf_counter()
    result = await call
    return result, (time.perf_counter() - t0) * 1000


@dataclass(frozen=True)
class LoadMetric:
    load_time_ms: float
    cache_hit: bool
    query_count: int
    family_size: int
    timestamp: float = field(default_factory=time.time)


class PerformanceMonitor:
    """Bounded history of reminder-list loads, with warnings for slow or oversized ones."""

    def __init__(self, max_metrics: int = 100):
        self._metrics: Deque[LoadMetric] = deque(maxlen=max_metrics)

    def track_load(self, load_time_ms: float, *, cache_hit: bool, query_count: int, family_size: int) -> LoadMetric:
        metric = LoadMetric(load_time_ms, cache_hit, query_count, family_size)
        self._metrics.append(metric)
        self._warn(metric)
        return metric

    def _warn(self, m: LoadMetric) -> None:
        if m.load_time_ms > SLOW_LOAD_MS:
            logger.warning("[PERF] slow reminder load: %.0fms for family size %s", m.load_time_ms, m.family_size)
        if m.query_count > MAX_QUERIES:
            logger.warning("[PERF] too many queries: %s for family size %s", m.query_count, m.family_size)
        if m.family_size > LARGE_FAMILY:
            logger.warning("[PERF] large family: %s members", m.family_size)

    def stats(self) -> Dict[str, Any]:
        n = len(self._metrics)
        if not n:
            return {
                "average_load_time_ms": 0.0,
                "cache_hit_rate": 0.0,
                "average_query_count": 0.0,
                "total_measurements": 0,
                "recent": [],
            }
        return {
            "average_load_time_ms": sum(m.load_time_ms for m in self._metrics) / n,
            "cache_hit_rate": sum(1 for m in self._metrics if m.cache_hit) / n,
            "average_query_count": sum(m.query_count for m in self._metrics) / n,
            "total_measurements": n,
            "recent": [asdict(m) for m in list(self._metrics)[-10:]],
        }

    def clear(self) -> None:
        self._metrics.clear()
