"""Two-tier cache for vision model classifications.

Caching is the first line of defense against provider cost and latency:
the same baseline/current pair classified by the same model always gets the
same answer, so it is only paid for once.

Tiers:
1. Memory - bounded LRU, per process
2. Durable - SQLAlchemy table with TTL expiry (see ``vision_store``)

Durable failures never reach callers. They are logged as ``CacheIOError``
and the cache behaves as if the entry were missing (reads) or keeps the
entry in memory only (writes).
"""

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.services.vision_store import VisionStore
from src.visual_ai.errors import CacheIOError
from src.visual_ai.models import VisionClassification

logger = structlog.get_logger()

DEFAULT_TTL_MS = 30 * 24 * 60 * 60 * 1000
DEFAULT_MAX_MEMORY_ENTRIES = 100


def generate_key(fingerprint_a: str, fingerprint_b: str, provider: str, model: str) -> str:
    """Cache key for a directional (baseline, current) pair."""
    return f"{provider}:{model}:{fingerprint_a}:{fingerprint_b}"


@dataclass
class CacheStats:
    """Snapshot of cache counters."""

    memory_size: int
    persistent_size: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float
    memory_hits: int = 0
    persistent_hits: int = 0

    def to_dict(self) -> dict:
        return {
            "memory_size": self.memory_size,
            "persistent_size": self.persistent_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
            "memory_hits": self.memory_hits,
            "persistent_hits": self.persistent_hits,
        }


@dataclass
class _MemoryEntry:
    value: VisionClassification
    provider: str
    model: str
    expires_at: float


class VisionResultCache:
    """Bounded in-memory LRU in front of a durable TTL store.

    A durable hit is promoted into the memory tier so repeated lookups of
    the same pair stay in process. All counters and the LRU order are
    guarded by one lock, so the cache may be shared across tasks and
    worker threads.
    """

    def __init__(
        self,
        store: Optional[VisionStore] = None,
        max_memory_entries: int = DEFAULT_MAX_MEMORY_ENTRIES,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], float] = time.time,
    ):
        if max_memory_entries < 1:
            raise ValueError("max_memory_entries must be at least 1")
        self.store = store
        self.max_memory_entries = max_memory_entries
        self.ttl_seconds = ttl_ms / 1000.0
        self.clock = clock

        self._memory: OrderedDict[str, _MemoryEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._memory_hits = 0
        self._persistent_hits = 0
        self.log = logger.bind(component="vision_cache")

    @classmethod
    def from_settings(cls, settings, store: Optional[VisionStore] = None) -> "VisionResultCache":
        if store is None and settings.cache_database_url:
            store = VisionStore(settings.cache_database_url)
        return cls(
            store=store,
            max_memory_entries=settings.max_memory_entries,
            ttl_ms=settings.ttl_ms,
        )

    generate_key = staticmethod(generate_key)

    async def get(self, key: str) -> Optional[VisionClassification]:
        """Look up a classification, memory first, then durable storage."""
        now = self.clock()
        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if entry.expires_at > now:
                    self._memory.move_to_end(key)
                    self._hits += 1
                    self._memory_hits += 1
                    return entry.value
                del self._memory[key]

        stored = None
        if self.store is not None:
            try:
                stored = await asyncio.to_thread(self.store.get_entry, key)
                if stored is not None and stored.is_expired(now):
                    await asyncio.to_thread(self.store.delete_entry, key)
                    self.log.debug("Expired cache entry removed", key=key)
                    stored = None
                elif stored is not None:
                    await asyncio.to_thread(self.store.touch_entry, key)
            except (SQLAlchemyError, OSError, ValueError) as e:
                self._report_io_error("read", key, e)
                stored = None

        if stored is None:
            with self._lock:
                self._misses += 1
            return None

        try:
            value = VisionClassification.from_dict(stored.payload)
        except (KeyError, TypeError, ValueError) as e:
            self._report_io_error("decode", key, e)
            with self._lock:
                self._misses += 1
            return None

        with self._lock:
            self._hits += 1
            self._persistent_hits += 1
            self._put_memory(key, _MemoryEntry(value, stored.provider, stored.model, stored.expires_at))
        return value

    async def set(self, key: str, value: VisionClassification, provider: str, model: str) -> None:
        """Write through both tiers."""
        expires_at = self.clock() + self.ttl_seconds
        with self._lock:
            self._put_memory(key, _MemoryEntry(value, provider, model, expires_at))

        if self.store is None:
            return
        try:
            await asyncio.to_thread(
                self.store.put_entry,
                key,
                value.to_dict(),
                provider,
                model,
                self.ttl_seconds,
                expires_at - self.ttl_seconds,
            )
        except (SQLAlchemyError, OSError, ValueError) as e:
            self._report_io_error("write", key, e)

    async def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._memory.pop(key, None) is not None
        if self.store is not None:
            try:
                removed = await asyncio.to_thread(self.store.delete_entry, key) or removed
            except (SQLAlchemyError, OSError) as e:
                self._report_io_error("delete", key, e)
        return removed

    async def prune_expired(self) -> int:
        """Drop expired entries from both tiers; returns the durable count."""
        now = self.clock()
        with self._lock:
            for key in [k for k, e in self._memory.items() if e.expires_at <= now]:
                del self._memory[key]
        if self.store is None:
            return 0
        try:
            pruned = await asyncio.to_thread(self.store.prune_expired, now)
        except (SQLAlchemyError, OSError) as e:
            self._report_io_error("prune", None, e)
            return 0
        if pruned:
            self.log.info("Pruned expired cache entries", count=pruned)
        return pruned

    async def clear(self) -> None:
        """Empty both tiers and reset every counter."""
        with self._lock:
            self._memory.clear()
            self._hits = self._misses = self._evictions = 0
            self._memory_hits = self._persistent_hits = 0
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.clear_entries)
            except (SQLAlchemyError, OSError) as e:
                self._report_io_error("clear", None, e)

    async def get_stats(self) -> CacheStats:
        persistent_size = 0
        if self.store is not None:
            try:
                persistent_size = await asyncio.to_thread(self.store.count_entries)
            except (SQLAlchemyError, OSError) as e:
                self._report_io_error("count", None, e)
        with self._lock:
            lookups = self._hits + self._misses
            return CacheStats(
                memory_size=len(self._memory),
                persistent_size=persistent_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                hit_rate=self._hits / lookups if lookups else 0.0,
                memory_hits=self._memory_hits,
                persistent_hits=self._persistent_hits,
            )

    async def close(self) -> None:
        if self.store is not None:
            await asyncio.to_thread(self.store.close)

    def _put_memory(self, key: str, entry: _MemoryEntry) -> None:
        # Caller holds self._lock
        if key in self._memory:
            self._memory.move_to_end(key)
        elif len(self._memory) >= self.max_memory_entries:
            evicted, _ = self._memory.popitem(last=False)
            self._evictions += 1
            self.log.debug("Evicted LRU cache entry", key=evicted)
        self._memory[key] = entry

    def _report_io_error(self, operation: str, key: Optional[str], error: Exception) -> None:
        self.log.warning(
            "Cache I/O error, degrading to memory tier",
            error_type=CacheIOError.__name__,
            operation=operation,
            key=key,
            cause=type(error).__name__,
            error=str(error),
        )
