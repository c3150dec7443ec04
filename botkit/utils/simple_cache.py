"""In-memory TTL cache with LRU eviction used to accelerate expensive lookups.

Single-threaded by design: every operation runs synchronously on the caller's
event loop, and the background sweep and per-entry expiry timers are
scheduled on that same loop. Writes are best-effort; a failed ``set`` is
logged and reported as ``False`` so callers never depend on the cache.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Awaitable, Callable, Iterable, Mapping

from botkit.utils.scheduling import PeriodicTask, call_later
from botkit.utils.sizing import estimate_size

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0
DEFAULT_MAX_MEMORY_BYTES = 100 * 1024 * 1024

_MISSING = object()


@dataclass
class CacheEntry:
    """Container for cached values with expiration and access metadata."""

    value: Any
    created_at: float
    ttl_seconds: float = 0.0
    access_count: int = 0
    last_accessed_at: float = 0.0
    size_bytes: int = 0
    timer: Any = field(default=None, repr=False, compare=False)

    def is_expired(self, now: float) -> bool:
        return self.ttl_seconds > 0 and now - self.created_at > self.ttl_seconds


class AdvancedCache:
    """Bounded key-value store with per-entry TTL and LRU eviction.

    TTL bounds freshness and LRU bounds size; both are active at once.
    Entries are kept in access order (least recently used first), so
    eviction is O(1).

    Attributes:
        max_size: Maximum number of entries held at once.
        default_ttl: TTL in seconds applied when ``set`` gets none (0 = no expiry).
        cleanup_interval: Seconds between background sweeps of expired entries.
        max_memory_bytes: Advisory memory ceiling, reported but never enforced.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        if cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be > 0")
        if max_memory_bytes < 1:
            raise ValueError("max_memory_bytes must be >= 1")

        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self.max_memory_bytes = max_memory_bytes
        self._clock = clock

        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_bytes = 0
        self._memory_warned = False

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0
        self._expirations = 0
        self._total_operations_lifetime = 0

        self._cleanup_task = PeriodicTask(
            "cache-cleanup", cleanup_interval, self._run_cleanup
        )
        self.start()

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"AdvancedCache(max_size={self.max_size}, default_ttl={self.default_ttl}, "
            f"size={len(self._store)}, hits={self._hits}, misses={self._misses}, "
            f"evictions={self._evictions})"
        )

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def start(self) -> bool:
        """Start the periodic expiry sweep if an event loop is running."""

        return self._cleanup_task.start()

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Store a value, replacing any previous entry under ``key``.

        Args:
            key: Cache key.
            value: Value to store.
            ttl: TTL in seconds; None applies ``default_ttl``, 0 disables expiry.

        Returns:
            True if stored, False if the write failed (nothing is inserted).
        """

        ttl_seconds = self.default_ttl if ttl is None else max(0.0, ttl)

        try:
            size_bytes = estimate_size(key) + estimate_size(value)
        except Exception:
            logger.warning(
                "cache.set_failed",
                extra={"cache_key": key[:32], "reason": "size_estimation"},
                exc_info=True,
            )
            return False

        # Drop the previous entry (and its timer) before the new one exists so
        # a stale expiry timer can never remove the fresh value.
        self._remove(key)

        if len(self._store) >= self.max_size:
            self.evict_lru()

        now = self._clock()
        entry = CacheEntry(
            value=value,
            created_at=now,
            ttl_seconds=ttl_seconds,
            last_accessed_at=now,
            size_bytes=size_bytes,
        )
        self._store[key] = entry
        self._memory_bytes += size_bytes
        self._sets += 1

        if ttl_seconds > 0:
            entry.timer = call_later(ttl_seconds, self._expire_entry, key, entry)

        self._check_memory_advisory()

        logger.debug(
            "cache.set",
            extra={
                "cache_key": key[:32],
                "size": len(self._store),
                "ttl_s": ttl_seconds,
            },
        )
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a cached value if it exists and is not expired.

        Args:
            key: Cache key.
            default: Returned on a miss.

        Returns:
            Cached value, or ``default`` if not found/expired.
        """

        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("cache.miss", extra={"cache_key": key[:32], "reason": "not_found"})
            return default

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self._expirations += 1
            self._misses += 1
            logger.debug("cache.miss", extra={"cache_key": key[:32], "reason": "expired"})
            return default

        entry.access_count += 1
        entry.last_accessed_at = now
        self._store.move_to_end(key)  # mark as recently used
        self._hits += 1
        logger.debug("cache.hit", extra={"cache_key": key[:32]})
        return entry.value

    def has(self, key: str) -> bool:
        """Check presence without touching access metadata or stats."""

        entry = self._store.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            self._remove(key)
            self._expirations += 1
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove ``key`` and its timer. Returns whether something was removed."""

        if self._remove(key) is None:
            return False
        self._deletes += 1
        return True

    def clear(self) -> None:
        """Remove all entries and roll the running counters into lifetime totals.

        The eviction counter is historical and survives a clear.
        """

        for entry in self._store.values():
            self._cancel_timer(entry)
        self._store.clear()
        self._memory_bytes = 0
        self._memory_warned = False

        self._total_operations_lifetime += self._hits + self._misses + self._sets + self._deletes
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0

    def cleanup_expired(self) -> int:
        """Delete every entry whose TTL has elapsed.

        Returns:
            Number of entries removed.
        """

        now = self._clock()
        expired_keys = [k for k, entry in self._store.items() if entry.is_expired(now)]
        for key in expired_keys:
            self._remove(key)
        self._expirations += len(expired_keys)
        return len(expired_keys)

    def evict_lru(self) -> str | None:
        """Evict the least recently accessed entry.

        Returns:
            The evicted key, or None when the cache is empty.
        """

        if not self._store:
            return None

        lru_key = next(iter(self._store))
        self._remove(lru_key)
        self._evictions += 1
        logger.debug("cache.evicted", extra={"cache_key": lru_key[:32], "reason": "lru"})
        return lru_key

    async def get_or_set(
        self,
        key: str,
        producer: Callable[[], Any | Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value, or compute, store and return it.

        ``producer`` may be sync or async. Its exceptions propagate and
        nothing is cached on failure.
        """

        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        value = producer()
        if inspect.isawaitable(value):
            value = await value

        self.set(key, value, ttl)
        return value

    def mget(self, keys: Iterable[str]) -> dict[str, Any]:
        """Get several keys at once; only hits appear in the result."""

        results: dict[str, Any] = {}
        for key in keys:
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                results[key] = value
        return results

    def mset(self, entries: Mapping[str, Any], ttl: float | None = None) -> dict[str, bool]:
        """Set several keys at once. Not atomic: each key succeeds on its own."""

        return {key: self.set(key, value, ttl) for key, value in entries.items()}

    def keys(self) -> list[str]:
        return list(self._store)

    def values(self) -> list[Any]:
        return [entry.value for entry in self._store.values()]

    def items(self) -> list[tuple[str, Any]]:
        return [(key, entry.value) for key, entry in self._store.items()]

    def memory_usage(self) -> int:
        """Estimated bytes held by keys and values (advisory)."""

        return self._memory_bytes

    def get_stats(self) -> dict[str, Any]:
        """Return cache metrics without exposing values."""

        lookups = self._hits + self._misses
        hit_rate = (self._hits / lookups) * 100 if lookups > 0 else 0.0

        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "deletes": self._deletes,
            "evictions": self._evictions,
            "expirations": self._expirations,
            "total_operations_lifetime": self._total_operations_lifetime,
            "size": len(self._store),
            "max_size": self.max_size,
            "hit_rate": round(hit_rate, 2),
            "memory_usage": self._memory_bytes,
            "max_memory_usage": self.max_memory_bytes,
            "memory_advisory_exceeded": self._memory_bytes > self.max_memory_bytes,
        }

    def destroy(self) -> None:
        """Stop the background sweep and drop every entry. Safe to call twice."""

        self._cleanup_task.stop()
        self.clear()

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._store.pop(key, None)
        if entry is None:
            return None
        self._cancel_timer(entry)
        self._memory_bytes -= entry.size_bytes
        return entry

    @staticmethod
    def _cancel_timer(entry: CacheEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _expire_entry(self, key: str, entry: CacheEntry) -> None:
        # The timer belongs to one specific entry; a newer value stored under
        # the same key must survive it.
        if self._store.get(key) is not entry:
            return
        entry.timer = None
        self._remove(key)
        self._expirations += 1
        logger.debug("cache.expired", extra={"cache_key": key[:32]})

    def _run_cleanup(self) -> None:
        removed = self.cleanup_expired()
        if removed:
            logger.info(
                "cache.cleanup",
                extra={"removed": removed, "size": len(self._store)},
            )

    def _check_memory_advisory(self) -> None:
        if self._memory_bytes > self.max_memory_bytes:
            if not self._memory_warned:
                self._memory_warned = True
                logger.warning(
                    "cache.memory_advisory_exceeded",
                    extra={
                        "memory_usage": self._memory_bytes,
                        "max_memory_usage": self.max_memory_bytes,
                        "size": len(self._store),
                    },
                )
        else:
            self._memory_warned = False


def build_cache_key(namespace: str, *parts: object, hashed: bool = False) -> str:
    """Build a namespaced cache key from arbitrary parts.

    Args:
        namespace: Key prefix grouping related entries (e.g. "cooldown").
        parts: Components joined with ':' after the namespace.
        hashed: Replace the joined parts with a SHA-256 digest, for long or
            sensitive inputs.

    Returns:
        Key string of the form "namespace:part1:part2" or "namespace:<digest>".
    """

    joined = ":".join(str(part) for part in parts)
    if hashed:
        joined = sha256(joined.encode("utf-8", errors="ignore")).hexdigest()
    return f"{namespace}:{joined}" if joined else namespace
