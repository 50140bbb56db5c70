import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Optional

from forumbrief.metrics import SLO_BREACHES, SUMMARY_REQUEST_DURATION

logger = logging.getLogger(__name__)

# Latency targets in milliseconds
CACHED_RESPONSE_SLO_MS = 100
UNCACHED_RESPONSE_SLO_MS = 3000


@dataclass
class PerformanceMetric:
    request_id: str
    thread_id: str
    start_time: float  # ms, monotonic clock
    end_time: Optional[float] = None
    duration: Optional[float] = None
    cache_hit: bool = False
    cache_key: Optional[str] = None
    generation_time: Optional[float] = None
    fetch_time: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PerformanceStats:
    total_requests: int = 0
    cached_requests: int = 0
    uncached_requests: int = 0
    average_response_time: float = 0.0
    average_cached_response_time: float = 0.0
    average_uncached_response_time: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0


@dataclass(frozen=True)
class CacheAnalysis:
    recent_cache_hits: list[PerformanceMetric]
    recent_cache_misses: list[PerformanceMetric]
    cache_effectiveness: float


def is_cached_response_fast(response_time_ms: float) -> bool:
    return response_time_ms < CACHED_RESPONSE_SLO_MS


def is_uncached_response_fast(response_time_ms: float) -> bool:
    return response_time_ms < UNCACHED_RESPONSE_SLO_MS


def _average(values: list[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def _percentile(sorted_values: list[float], percentile: float) -> float:
    if not sorted_values:
        return 0.0
    index = math.ceil(len(sorted_values) * percentile) - 1
    return sorted_values[max(0, index)]


def _monotonic_ms() -> float:
    return time.perf_counter() * 1000


class PerformanceMonitor:
    """Request timing, cache-hit tagging and latency SLO checks.

    Keeps the last ``max_history`` requests in a ring buffer; statistics are
    computed over completed requests in that window.
    """

    def __init__(self, max_history: int = 1000, clock: Callable[[], float] = _monotonic_ms):
        self.max_history = max_history
        self._clock = clock
        self._metrics: deque[PerformanceMetric] = deque(maxlen=max_history)
        self._index: dict[str, PerformanceMetric] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def start_request(self, thread_id: str) -> str:
        with self._lock:
            self._counter += 1
            request_id = f"req_{self._counter}_{int(time.time() * 1000)}"
            if len(self._metrics) == self._metrics.maxlen:
                dropped = self._metrics[0]
                self._index.pop(dropped.request_id, None)
            metric = PerformanceMetric(
                request_id=request_id,
                thread_id=thread_id,
                start_time=self._clock(),
            )
            self._metrics.append(metric)
            self._index[request_id] = metric
        return request_id

    def mark_cache_hit(self, request_id: str, cache_key: str) -> None:
        with self._lock:
            metric = self._index.get(request_id)
            if metric:
                metric.cache_hit = True
                metric.cache_key = cache_key

    def record_generation_time(self, request_id: str, generation_time_ms: float) -> None:
        with self._lock:
            metric = self._index.get(request_id)
            if metric:
                metric.generation_time = generation_time_ms

    def record_fetch_time(self, request_id: str, fetch_time_ms: float) -> None:
        with self._lock:
            metric = self._index.get(request_id)
            if metric:
                metric.fetch_time = fetch_time_ms

    def complete_request(self, request_id: str, error: Optional[str] = None) -> Optional[PerformanceMetric]:
        with self._lock:
            metric = self._index.get(request_id)
            if metric is None:
                return None
            metric.end_time = self._clock()
            metric.duration = metric.end_time - metric.start_time
            if error:
                metric.error = error
            snapshot = replace(metric)

        self._report(snapshot)
        return snapshot

    def get_stats(self) -> PerformanceStats:
        with self._lock:
            completed = [replace(m) for m in self._metrics if m.duration is not None]

        if not completed:
            return PerformanceStats()

        cached = [m for m in completed if m.cache_hit]
        uncached = [m for m in completed if not m.cache_hit]
        errors = [m for m in completed if m.error]
        all_times = sorted(m.duration for m in completed)

        return PerformanceStats(
            total_requests=len(completed),
            cached_requests=len(cached),
            uncached_requests=len(uncached),
            average_response_time=_average(all_times),
            average_cached_response_time=_average([m.duration for m in cached]),
            average_uncached_response_time=_average([m.duration for m in uncached]),
            cache_hit_rate=len(cached) / len(completed),
            error_rate=len(errors) / len(completed),
            p95_response_time=_percentile(all_times, 0.95),
            p99_response_time=_percentile(all_times, 0.99),
        )

    def get_slow_requests(self, threshold_ms: float = UNCACHED_RESPONSE_SLO_MS) -> list[PerformanceMetric]:
        """Ten slowest completed requests above ``threshold_ms``."""
        with self._lock:
            slow = [replace(m) for m in self._metrics if m.duration and m.duration > threshold_ms]
        slow.sort(key=lambda m: m.duration, reverse=True)
        return slow[:10]

    def get_cache_analysis(self) -> CacheAnalysis:
        with self._lock:
            recent = [replace(m) for m in list(self._metrics)[-100:]]

        hits = [m for m in recent if m.cache_hit and m.duration is not None]
        misses = [m for m in recent if not m.cache_hit and m.duration is not None]
        avg_hit = _average([m.duration for m in hits])
        avg_miss = _average([m.duration for m in misses])
        effectiveness = (avg_miss - avg_hit) / avg_miss if avg_miss > 0 else 0.0

        return CacheAnalysis(
            recent_cache_hits=hits[-10:],
            recent_cache_misses=misses[-10:],
            cache_effectiveness=effectiveness,
        )

    def is_cached_response_fast(self, response_time_ms: float) -> bool:
        return is_cached_response_fast(response_time_ms)

    def is_uncached_response_fast(self, response_time_ms: float) -> bool:
        return is_uncached_response_fast(response_time_ms)

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._index.clear()
            self._counter = 0

    def _report(self, metric: PerformanceMetric) -> None:
        duration = metric.duration or 0.0
        cache_status = "hit" if metric.cache_hit else "miss"
        SUMMARY_REQUEST_DURATION.labels(cache_status=cache_status).observe(duration / 1000)

        if not metric.cache_hit and duration > UNCACHED_RESPONSE_SLO_MS:
            SLO_BREACHES.labels(cache_status=cache_status).inc()
            logger.warning(
                f"Slow uncached request: {metric.request_id} took {duration:.2f}ms "
                f"(thread: {metric.thread_id})"
            )
        if metric.cache_hit and duration > CACHED_RESPONSE_SLO_MS:
            SLO_BREACHES.labels(cache_status=cache_status).inc()
            logger.warning(
                f"Slow cached request: {metric.request_id} took {duration:.2f}ms "
                f"(cache key: {metric.cache_key})"
            )

        logger.debug(
            "Request %s: %.2fms [%s] (thread: %s)",
            metric.request_id, duration, cache_status.upper(), metric.thread_id,
        )
        if metric.error:
            logger.error("Request %s failed: %s", metric.request_id, metric.error)
