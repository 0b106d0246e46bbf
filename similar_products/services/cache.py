"""
DetailStore - Cache-aside store for product details with single-flight loading.

Features:
- Memory-based cache with LRU eviction on overflow
- Absolute (expire-after-write) and sliding (expire-after-access) TTLs
- Single-flight loads: concurrent misses for one key share one loader call
- Failed or empty loads are never cached
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from similar_products.models import ProductDetail
from similar_products.services.deduplicator import RequestDeduplicator

T = TypeVar("T")

Loader = Callable[[str], Awaitable[ProductDetail | None]]


@dataclass
class CacheConfig:
    """Configuration for the detail store.

    expire_after_access only has an observable effect when it is not
    longer than expire_after_write. A None TTL disables that expiry.
    """

    maximum_size: int = 1000
    expire_after_write: timedelta | None = timedelta(minutes=30)
    expire_after_access: timedelta | None = timedelta(minutes=10)
    record_stats: bool = True


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with timing metadata (monotonic seconds)."""

    key: str
    value: T
    created_at: float
    last_accessed_at: float

    def is_expired(
        self,
        now: float,
        expire_after_write: float | None,
        expire_after_access: float | None,
    ) -> bool:
        """Check if entry is past either of its TTLs."""
        if expire_after_write is not None and now - self.created_at > expire_after_write:
            return True
        if (
            expire_after_access is not None
            and now - self.last_accessed_at > expire_after_access
        ):
            return True
        return False


class DetailStore:
    """
    Bounded, time-expiring product id -> ProductDetail cache.

    Usage:
        store = DetailStore(CacheConfig(maximum_size=500))

        detail = await store.get("42", client.fetch_detail)
        if detail is None:
            ...  # not found upstream, or upstream unavailable

    All state changes happen under an internal lock that is never held
    across an await, so a store may be shared by every request.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self.config = config or CacheConfig()
        self._entries: OrderedDict[str, CacheEntry[ProductDetail]] = OrderedDict()
        self._write_ttl = _seconds(self.config.expire_after_write)
        self._access_ttl = _seconds(self.config.expire_after_access)
        self._clock = clock
        self._debug = debug
        self._lock = threading.Lock()
        self._loads = RequestDeduplicator(debug=debug)
        self._stats = CacheStats()

    async def get(self, key: str, loader: Loader) -> ProductDetail | None:
        """
        Return the cached detail for key, loading it on a miss.

        Args:
            key: Product id
            loader: Async function resolving a product id, None when absent

        Returns:
            The detail, or None if the loader found nothing

        Raises:
            Any exception raised by loader; the key stays unpopulated
        """
        value = self.get_if_present(key)
        if value is not None:
            return value

        return await self._loads.dedupe(key, lambda: self._load(key, loader))

    async def _load(self, key: str, loader: Loader) -> ProductDetail | None:
        """Run the loader once and populate the store on success."""
        # A load that completed just before this one started may have filled the key.
        with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            if entry is not None:
                self._touch(entry, now)
                return entry.value

        try:
            value = await loader(key)
        except Exception as e:
            with self._lock:
                self._count("load_failures")
            self._log(f"LOAD FAILED: {key[:50]} ({type(e).__name__})")
            raise

        if value is None:
            with self._lock:
                self._count("load_failures")
            self._log(f"LOAD EMPTY: {key[:50]}")
            return None

        with self._lock:
            self._count("load_successes")
        self.put(key, value)
        return value

    def get_if_present(self, key: str) -> ProductDetail | None:
        """Return a live cached value without loading. Refreshes access time."""
        with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            if entry is None:
                self._count("misses")
                self._log(f"MISS: {key[:50]}")
                return None

            self._touch(entry, now)
            self._count("hits")
            self._log(f"HIT: {key[:50]}")
            return entry.value

    def put(self, key: str, value: ProductDetail) -> None:
        """Insert or replace a value, evicting least-recently-used entries on overflow."""
        if self.config.maximum_size <= 0:
            return

        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed_at=now,
            )
            self._entries.move_to_end(key)

            while len(self._entries) > self.config.maximum_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._count("evictions")
                self._log(f"EVICT: {evicted_key[:50]}")

            self._log(f"SET: {key[:50]}")

    def invalidate(self, key: str) -> bool:
        """Delete a specific key from the store."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                self._log(f"DELETE: {key[:50]}")
                return True
            return False

    def invalidate_all(self) -> None:
        """Clear all entries."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._log(f"CLEAR: {count} entries removed")

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        with self._lock:
            now = self._clock()
            expired_keys = [
                k
                for k, v in self._entries.items()
                if v.is_expired(now, self._write_ttl, self._access_ttl)
            ]
            for key in expired_keys:
                del self._entries[key]
            self._count("expirations", len(expired_keys))

            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

            return len(expired_keys)

    async def close(self) -> None:
        """Cancel loads still in flight."""
        await self._loads.cancel_all()

    def _live_entry(self, key: str, now: float) -> CacheEntry[ProductDetail] | None:
        """Return the entry for key if live, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(now, self._write_ttl, self._access_ttl):
            del self._entries[key]
            self._count("expirations")
            self._log(f"EXPIRED: {key[:50]}")
            return None

        return entry

    def _touch(self, entry: CacheEntry[ProductDetail], now: float) -> None:
        """Mark entry as read now. Caller holds the lock."""
        entry.last_accessed_at = now
        self._entries.move_to_end(entry.key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return (
                isinstance(key, str) and self._live_entry(key, self._clock()) is not None
            )

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        self._stats.max_size = self.config.maximum_size
        self._stats.loads_in_flight = self._loads.get_in_flight_count()
        return self._stats

    def _count(self, field: str, amount: int = 1) -> None:
        if self.config.record_stats:
            setattr(self._stats, field, getattr(self._stats, field) + amount)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[DetailStore] {message}")


def _seconds(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    load_successes: int = 0
    load_failures: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0
    loads_in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "load_successes": self.load_successes,
            "load_failures": self.load_failures,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
            "loads_in_flight": self.loads_in_flight,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
