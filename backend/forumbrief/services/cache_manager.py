"""In-memory summary cache.

Entries are keyed ``summary_<thread_id>_<last_post_timestamp>`` and live in
process memory only. A thread never has more than one live entry: storing a
summary for a new activity timestamp drops every older analysis of that
thread. Capacity is bounded by evicting the oldest tenth of the store, and a
background sweep removes entries past their TTL even if nobody asks for them
again.

All state is guarded by a single lock so compound operations (supersede,
evict, insert / lookup, expire, count) are atomic with respect to concurrent
requests and the sweep task.
"""
import asyncio
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from forumbrief.metrics import CACHE_ENTRIES, CACHE_EVICTIONS
from forumbrief.schemas.summary import SummaryData

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "summary_"
_CACHE_KEY_PATTERN = re.compile(r"^summary_(.+)_([0-9]+)$", re.DOTALL)
_TIMESTAMP_PATTERN = re.compile(r"^[0-9]+$")

# Share of the store dropped when it is full
EVICTION_FRACTION = 0.1


class CacheKeyError(ValueError):
    """Raised when a cache key cannot be built from the given components."""


@dataclass(frozen=True)
class CacheKeyComponents:
    thread_id: str
    last_post_timestamp: str


@dataclass(frozen=True)
class CacheEntry:
    data: SummaryData
    inserted_at: float  # clock() seconds at insertion
    thread_id: str
    last_post_timestamp: str
    generated_at: str  # ISO-8601


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    total_requests: int
    hit_rate: float


@dataclass(frozen=True)
class CacheSize:
    entries: int
    max_entries: int
    utilization_percent: float


def generate_cache_key(thread_id: str, last_post_timestamp: str) -> str:
    if not thread_id or not thread_id.strip():
        raise CacheKeyError("Thread ID is required and cannot be empty")
    if not last_post_timestamp or not last_post_timestamp.strip():
        raise CacheKeyError("Last post timestamp is required")
    if not _TIMESTAMP_PATTERN.fullmatch(last_post_timestamp):
        raise CacheKeyError("Last post timestamp must be a numeric string")
    return f"{CACHE_KEY_PREFIX}{thread_id}_{last_post_timestamp}"


def parse_cache_key(cache_key: str) -> Optional[CacheKeyComponents]:
    if not isinstance(cache_key, str):
        return None
    match = _CACHE_KEY_PATTERN.fullmatch(cache_key)
    if not match:
        return None
    return CacheKeyComponents(thread_id=match.group(1), last_post_timestamp=match.group(2))


class CacheManager:
    """TTL + capacity bounded summary cache with at most one entry per thread."""

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 1000,
        cleanup_interval_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._total_requests = 0
        self._sweep_task: Optional[asyncio.Task] = None

    # -- keys -------------------------------------------------------------

    def generate_cache_key(self, thread_id: str, last_post_timestamp: str) -> str:
        return generate_cache_key(thread_id, last_post_timestamp)

    def parse_cache_key(self, cache_key: str) -> Optional[CacheKeyComponents]:
        return parse_cache_key(cache_key)

    # -- core operations --------------------------------------------------

    def set(self, thread_id: str, last_post_timestamp: str, data: SummaryData) -> CacheEntry:
        cache_key = generate_cache_key(thread_id, last_post_timestamp)
        entry = CacheEntry(
            data=data,
            inserted_at=self._clock(),
            thread_id=thread_id,
            last_post_timestamp=last_post_timestamp,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )

        with self._lock:
            superseded = [
                key for key, existing in self._entries.items()
                if existing.thread_id == thread_id
                and existing.last_post_timestamp != last_post_timestamp
            ]
            for key in superseded:
                del self._entries[key]
            if superseded:
                CACHE_EVICTIONS.labels(reason="superseded").inc(len(superseded))

            if cache_key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest_locked()

            self._entries[cache_key] = entry
            CACHE_ENTRIES.set(len(self._entries))

        return entry

    def get(self, thread_id: str, last_post_timestamp: str) -> Optional[CacheEntry]:
        cache_key = generate_cache_key(thread_id, last_post_timestamp)

        with self._lock:
            self._total_requests += 1
            entry = self._entries.get(cache_key)
            if entry is not None:
                if self._is_fresh(entry, self._clock()):
                    self._hits += 1
                    return entry
                del self._entries[cache_key]
                CACHE_EVICTIONS.labels(reason="ttl").inc()
                CACHE_ENTRIES.set(len(self._entries))
            self._misses += 1
            return None

    def has(self, thread_id: str, last_post_timestamp: str) -> bool:
        return self.get(thread_id, last_post_timestamp) is not None

    def invalidate_thread(self, thread_id: str) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if entry.thread_id == thread_id]
            for key in doomed:
                del self._entries[key]
            CACHE_ENTRIES.set(len(self._entries))

        if doomed:
            CACHE_EVICTIONS.labels(reason="invalidated").inc(len(doomed))
            logger.info("Invalidated %d cached summaries for thread %s", len(doomed), thread_id)
        return len(doomed)

    def cleanup_expired(self) -> int:
        """Remove every entry older than the TTL. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
            for key in expired:
                del self._entries[key]
            CACHE_ENTRIES.set(len(self._entries))

        if expired:
            CACHE_EVICTIONS.labels(reason="ttl").inc(len(expired))
            logger.info("Cache cleanup: removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._total_requests = 0
            CACHE_ENTRIES.set(0)

    # -- introspection ----------------------------------------------------

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._total_requests
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                total_requests=total,
                hit_rate=self._hits / total if total > 0 else 0.0,
            )

    def get_size(self) -> CacheSize:
        with self._lock:
            entries = len(self._entries)
        return CacheSize(
            entries=entries,
            max_entries=self.max_entries,
            utilization_percent=entries / self.max_entries * 100,
        )

    def get_all_keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def get_by_key(self, cache_key: str) -> Optional[CacheEntry]:
        """Raw lookup for debugging, no TTL check and no stats."""
        with self._lock:
            return self._entries.get(cache_key)

    # -- background sweep -------------------------------------------------

    async def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Summary cache sweep started (every %ss, ttl %ss, max %d entries)",
            self.cleanup_interval_seconds, self.ttl_seconds, self.max_entries,
        )

    async def stop(self) -> None:
        task = self._sweep_task
        if task is None:
            return
        self._sweep_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Summary cache sweep stopped")

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error(f"Cache cleanup failed: {type(e).__name__}: {e}")

    # -- internals --------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at <= self.ttl_seconds

    def _evict_oldest_locked(self) -> None:
        ordered = sorted(self._entries.items(), key=lambda item: item[1].inserted_at)
        to_remove = max(1, math.ceil(len(ordered) * EVICTION_FRACTION))
        for key, _ in ordered[:to_remove]:
            del self._entries[key]
        CACHE_EVICTIONS.labels(reason="capacity").inc(to_remove)
        logger.info("Summary cache full (%d entries), evicted %d oldest", len(ordered), to_remove)
