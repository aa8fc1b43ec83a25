"""In-process cache service with per-entry TTL and approximate-LRU eviction.

Expiry is detected lazily on access and by a periodic sweep; there is no timer
per entry, so an expired entry may stay in memory until it is read or swept.
When the store is full, inserting a new key evicts the entry with the oldest
last access.
"""

import asyncio
import inspect
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from core import cache_keys
from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)

_MISSING = object()

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """Single cached value with absolute expiry and access metadata."""

    value: Any
    created_at: float
    expires_at: float
    access_count: int = 0
    last_accessed_at: float = field(default=0.0)

    def __post_init__(self):
        if not self.last_accessed_at:
            self.last_accessed_at = self.created_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def touch(self, now: float) -> None:
        self.access_count += 1
        self.last_accessed_at = now


def _empty_stats() -> Dict[str, int]:
    return {
        "hits": 0,
        "misses": 0,
        "sets": 0,
        "deletes": 0,
        "evictions": 0,
    }


def format_bytes(size: int) -> str:
    """Human readable byte count (``1.5 KB``)."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    i = min(int(math.log(size, 1024)), len(units) - 1)
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


class CacheService:
    """Async-friendly in-memory TTL cache.

    All operations except ``get_or_set``, ``start`` and ``stop`` are
    synchronous and never block; they run on the event loop thread, so no
    locking is needed around the entry map. None of the public methods raise
    for a missing key: absence is reported through the return value.

    Args:
        default_ttl: Seconds an entry lives when ``set`` gets no ttl.
        max_size: Maximum number of entries held after any ``set``.
        sweep_interval: Seconds between background sweeps once started.
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 1000,
        sweep_interval: float = 60,
        clock: Optional[Clock] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self._clock: Clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = _empty_stats()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "CacheService":
        return cls(
            default_ttl=settings.cache_default_ttl,
            max_size=settings.cache_max_size,
            sweep_interval=settings.cache_sweep_interval,
            clock=clock,
        )

    # ============================================================================
    # Basic operations
    # ============================================================================

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            log_cache_operation(logger, "get", key, hit=False)
            return _MISSING

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._stats["misses"] += 1
            log_cache_operation(logger, "get", key, hit=False, expired=True)
            return _MISSING

        entry.touch(now)
        self._stats["hits"] += 1
        log_cache_operation(logger, "get", key, hit=True)
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a live value, or ``default`` when absent or expired."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` for ``ttl`` seconds (default TTL when omitted)."""
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl

        # Overwriting an existing key never triggers an eviction
        if key not in self._entries and len(self._entries) >= self.max_size:
            self.evict()

        now = self._clock()
        self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + ttl)
        self._stats["sets"] += 1
        log_cache_operation(logger, "set", key, ttl=ttl)
        return True

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if something was removed."""
        deleted = self._entries.pop(key, None) is not None
        if deleted:
            self._stats["deletes"] += 1
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    def has(self, key: str) -> bool:
        """Check for a live entry without touching it. Purges it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return False
        return True

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        return len(self._entries)

    def size(self) -> int:
        """Physical entry count (may include expired entries not yet swept)."""
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def clear(self) -> bool:
        self._entries.clear()
        logger.info("Cache cleared")
        return True

    # ============================================================================
    # Advanced operations
    # ============================================================================

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value or compute it with ``factory`` and store it.

        ``factory`` may be a plain callable or return an awaitable. Concurrent
        callers missing the same key each run the factory.
        """
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached

        value = factory()
        if inspect.isawaitable(value):
            value = await value

        self.set(key, value, ttl)
        return value

    def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Get several keys; absent ones are left out of the result."""
        result = {}
        for key in keys:
            value = self._lookup(key)
            if value is not _MISSING:
                result[key] = value
        return result

    def mset(self, entries: Dict[str, Any], ttl: Optional[float] = None) -> bool:
        for key, value in entries.items():
            self.set(key, value, ttl)
        return True

    def delete_by_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``. Returns the count."""
        matching = [key for key in self._entries if key.startswith(prefix)]
        for key in matching:
            del self._entries[key]
        self._stats["deletes"] += len(matching)
        log_cache_operation(logger, "delete_by_prefix", prefix, deleted=len(matching))
        return len(matching)

    def delete_by_tag(self, tag: str) -> int:
        return self.delete_by_prefix(cache_keys.tag_prefix(tag))

    # ============================================================================
    # Domain invalidation
    # ============================================================================

    def invalidate_project(self, project_id: Any, user_id: Any) -> int:
        removed = int(self.delete(cache_keys.project_key(project_id)))
        return removed + self.delete_by_prefix(cache_keys.projects_user_prefix(user_id))

    def invalidate_devis(self, devis_id: Any, user_id: Any) -> int:
        removed = int(self.delete(cache_keys.devis_key(devis_id)))
        return removed + self.delete_by_prefix(cache_keys.devis_user_prefix(user_id))

    def invalidate_craftsman(self, craftsman_id: Any) -> int:
        removed = int(self.delete(cache_keys.craftsman_key(craftsman_id)))
        return removed + self.delete_by_prefix(cache_keys.CRAFTSMEN_LIST_PREFIX)

    def invalidate_user(self, user_id: Any) -> int:
        """Drop every cached listing belonging to ``user_id``."""
        return (
            self.delete_by_prefix(cache_keys.projects_user_prefix(user_id))
            + self.delete_by_prefix(cache_keys.devis_user_prefix(user_id))
            + self.delete_by_prefix(cache_keys.messages_user_prefix(user_id))
        )

    # ============================================================================
    # Maintenance
    # ============================================================================

    def cleanup(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cache sweep removed expired entries", removed=len(expired),
                        remaining=len(self._entries))
        return len(expired)

    def evict(self) -> bool:
        """Evict the entry with the oldest last access.

        Full scan on every call; ties go to the earliest inserted key.
        """
        oldest_key = None
        oldest_time = math.inf

        for key, entry in self._entries.items():
            if entry.last_accessed_at < oldest_time:
                oldest_time = entry.last_accessed_at
                oldest_key = key

        if oldest_key is None:
            return False

        del self._entries[oldest_key]
        self._stats["evictions"] += 1
        log_cache_operation(logger, "evict", oldest_key)
        return True

    # ============================================================================
    # Statistics
    # ============================================================================

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total if total > 0 else 0.0
        return {
            **self._stats,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": hit_rate,
            "memory_usage": self.estimate_memory_usage(),
        }

    def reset_stats(self) -> None:
        self._stats = _empty_stats()

    def estimate_memory_usage(self) -> str:
        total = 0
        for key, entry in self._entries.items():
            total += len(key) * 2
            total += len(json.dumps(entry.value, default=str)) * 2
            total += 64
        return format_bytes(total)

    # ============================================================================
    # Lifecycle
    # ============================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._running:
            logger.warning("Cache sweep already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Cache sweep started",
                    sweep_interval=self.sweep_interval,
                    max_size=self.max_size,
                    default_ttl=self.default_ttl)

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        # Single loop: a sweep never overlaps with the previous one
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))
