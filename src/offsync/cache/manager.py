"""Two-tier cache with per-entry expiration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import anyio

from offsync.errors import StorageUnavailable
from offsync.records import CacheEntry, as_timedelta, utc_now
from offsync.store.entry_store import EntryStore, Table
from offsync.store.models import dump_payload

logger = logging.getLogger(__name__)

# Default cache TTL in seconds (5 minutes)
DEFAULT_TTL = 300


class CacheStrategy(str, Enum):
    """Which tiers a cache writes to and reads from."""

    MEMORY_ONLY = "memory_only"
    DURABLE_ONLY = "durable_only"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class PutResult:
    """Outcome of a cache write.

    ``degraded`` is set when the memory tier was written but the durable
    tier was not (hybrid strategy only).
    """

    entry: CacheEntry
    degraded: bool = False
    error: str | None = None


@dataclass(frozen=True)
class CacheStats:
    """Counters collected since the cache manager was created."""

    hits: int
    misses: int
    expired: int
    degraded_writes: int
    memory_entries: int


class CacheManager:
    """Memory and durable cache tiers with lazy and periodic expiration.

    The memory tier maps keys to immutable :class:`CacheEntry` objects and is
    only ever mutated by replacing a whole entry under a lock, so readers
    never observe a partially written entry.
    """

    def __init__(
        self,
        store: EntryStore | None = None,
        strategy: CacheStrategy = CacheStrategy.HYBRID,
        default_ttl: float | timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the cache manager.

        Args:
            store: Entry store backing the durable tier
            strategy: Which tiers to use
            default_ttl: TTL applied when ``put`` is called without one
            clock: Source of the current time

        Raises:
            ValueError: If a durable strategy is requested without a store
        """
        if strategy is not CacheStrategy.MEMORY_ONLY and store is None:
            raise ValueError(f"Strategy '{strategy.value}' requires an entry store")
        self.strategy = strategy
        self.default_ttl = as_timedelta(default_ttl)
        self._store = store
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expired = 0
        self._degraded_writes = 0

    @property
    def _uses_memory(self) -> bool:
        return self.strategy is not CacheStrategy.DURABLE_ONLY

    @property
    def _uses_durable(self) -> bool:
        return self.strategy is not CacheStrategy.MEMORY_ONLY

    @property
    def _durable(self) -> EntryStore:
        if self._store is None:
            raise RuntimeError(f"Strategy '{self.strategy.value}' has no durable tier")
        return self._store

    def put(self, key: str, value: Any, ttl: float | timedelta | None = None) -> PutResult:
        """Cache a value, overwriting any existing entry for the key.

        Args:
            key: Cache key
            value: JSON-serializable value or bytes
            ttl: Time-to-live in seconds or as a timedelta (default TTL if None)

        Returns:
            PutResult describing whether the durable write succeeded

        Raises:
            ValueError: If ttl is not positive or value is not serializable
            StorageUnavailable: If the durable write fails under durable_only
        """
        lifetime = self.default_ttl if ttl is None else as_timedelta(ttl)
        if lifetime <= timedelta(0):
            raise ValueError("ttl must be positive")
        dump_payload(value)

        now = self._clock()
        entry = CacheEntry(key=key, value=value, created_at=now, expires_at=now + lifetime)

        if self._uses_memory:
            with self._lock:
                self._memory[key] = entry

        if not self._uses_durable:
            return PutResult(entry=entry)

        try:
            self._durable.put(Table.CACHE_ENTRIES, key, entry)
        except StorageUnavailable as e:
            if self.strategy is CacheStrategy.DURABLE_ONLY:
                raise
            with self._lock:
                self._degraded_writes += 1
            logger.warning(f"Durable write for '{key}' failed, kept in memory only: {e}")
            return PutResult(entry=entry, degraded=True, error=str(e))
        return PutResult(entry=entry)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a cached value.

        Args:
            key: Cache key
            default: Returned when the key is absent or expired

        Returns:
            The cached value, or default
        """
        entry = self.entry(key)
        return default if entry is None else entry.value

    def contains(self, key: str) -> bool:
        """Check whether a live entry exists for the key."""
        return self.entry(key) is not None

    def entry(self, key: str) -> CacheEntry | None:
        """Get the full cache entry for a key.

        Checks the memory tier first, then the durable tier. A durable hit is
        promoted to memory. Expired entries are evicted and reported absent.

        Returns:
            The live entry, or None
        """
        now = self._clock()

        if self._uses_memory:
            with self._lock:
                cached = self._memory.get(key)
            if cached is not None:
                if not cached.is_expired(now):
                    self._count(hits=1)
                    return cached
                self._evict(key, cached, now)
                self._count(expired=1)
                return None

        if not self._uses_durable:
            self._count(misses=1)
            return None

        try:
            stored: CacheEntry | None = self._durable.get(Table.CACHE_ENTRIES, key)
        except StorageUnavailable as e:
            if self.strategy is CacheStrategy.DURABLE_ONLY:
                raise
            logger.warning(f"Durable read for '{key}' failed, treating as miss: {e}")
            self._count(misses=1)
            return None

        if stored is None:
            self._count(misses=1)
            return None
        if stored.is_expired(now):
            self._evict(key, stored, now)
            self._count(expired=1)
            return None

        self._count(hits=1)
        if not self._uses_memory:
            return stored
        with self._lock:
            # A concurrent put may have landed first; it is newer than the store
            return self._memory.setdefault(key, stored)

    def remove(self, key: str) -> None:
        """Remove a key from both tiers. Removing an absent key is a no-op."""
        with self._lock:
            self._memory.pop(key, None)
        if self._uses_durable:
            self._durable.delete(Table.CACHE_ENTRIES, key)

    def clear(self) -> None:
        """Remove every entry from both tiers."""
        with self._lock:
            self._memory.clear()
        if self._uses_durable:
            removed = self._durable.clear(Table.CACHE_ENTRIES)
            logger.info(f"Cleared {removed} durable cache entries")

    def sweep(self) -> int:
        """Remove expired entries from both tiers.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._memory.items() if entry.is_expired(now)]
            for key in stale:
                del self._memory[key]
        removed = set(stale)

        if self._uses_durable:
            expired_keys = [
                entry.key
                for entry in self._durable.scan(
                    Table.CACHE_ENTRIES, lambda entry: entry.is_expired(now)
                )
            ]
            self._durable.delete_many(Table.CACHE_ENTRIES, expired_keys)
            removed.update(expired_keys)

        if removed:
            logger.debug(f"Swept {len(removed)} expired cache entries")
        return len(removed)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep expired entries every ``interval`` seconds until cancelled."""
        while True:
            await anyio.sleep(interval)
            try:
                self.sweep()
            except StorageUnavailable as e:
                logger.warning(f"Cache sweep failed, will retry: {e}")

    def stats(self) -> CacheStats:
        """Return hit/miss counters and the memory-tier size."""
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                expired=self._expired,
                degraded_writes=self._degraded_writes,
                memory_entries=len(self._memory),
            )

    def _evict(self, key: str, entry: CacheEntry, now: datetime) -> None:
        """Evict an expired entry without clobbering a fresher replacement."""
        with self._lock:
            if self._memory.get(key) is entry:
                del self._memory[key]
        if not self._uses_durable:
            return
        try:
            stored = self._durable.get(Table.CACHE_ENTRIES, key)
            if stored is not None and stored.is_expired(now):
                self._durable.delete(Table.CACHE_ENTRIES, key)
        except StorageUnavailable as e:
            if self.strategy is CacheStrategy.DURABLE_ONLY:
                raise
            logger.warning(f"Could not evict expired '{key}' from durable tier: {e}")

    def _count(self, hits: int = 0, misses: int = 0, expired: int = 0) -> None:
        with self._lock:
            self._hits += hits
            self._misses += misses
            self._expired += expired
