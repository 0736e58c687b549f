"""In-process TTL + LRU cache used in front of store reads."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class _CacheEntry:
    data: Any
    expires_at_ms: float
    created_at_ms: float
    access_count: int = 0
    last_access_ms: float = 0.0


class TTLCache:
    """Namespaced key/value cache with lazy expiry and LRU eviction at capacity.

    Expired entries are removed when read and by a periodic sweep
    (``start``/``stop``). Eviction picks the entry with the oldest last access.
    """

    def __init__(
        self,
        prefix: str,
        ttl_seconds: float,
        max_size: int,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = _wall_clock_ms,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweep_task: Optional[asyncio.Task] = None

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._full_key(key) in self._entries

    def keys(self) -> List[str]:
        """Stored keys, prefix included."""
        return list(self._entries)

    def get(self, key: str, default: Any = None) -> Any:
        full_key = self._full_key(key)
        entry = self._entries.get(full_key)
        if entry is None:
            self._misses += 1
            return default

        now = self._clock()
        if now >= entry.expires_at_ms:
            del self._entries[full_key]
            self._misses += 1
            return default

        entry.access_count += 1
        entry.last_access_ms = now
        self._hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        full_key = self._full_key(key)
        if len(self._entries) >= self.max_size and full_key not in self._entries:
            self._evict_lru()

        now = self._clock()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[full_key] = _CacheEntry(
            data=value,
            expires_at_ms=now + ttl * 1000,
            created_at_ms=now,
            last_access_ms=now,
        )

    def has(self, key: str) -> bool:
        full_key = self._full_key(key)
        entry = self._entries.get(full_key)
        if entry is None:
            return False
        if self._clock() >= entry.expires_at_ms:
            del self._entries[full_key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(self._full_key(key), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def get_many(self, keys: Iterable[str]) -> List[Any]:
        return [self.get(key) for key in keys]

    def set_many(
        self, items: Iterable[Tuple[str, Any]], ttl_seconds: Optional[float] = None
    ) -> None:
        for key, value in items:
            self.set(key, value, ttl_seconds)

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest_key = min(
            self._entries, key=lambda item: self._entries[item].last_access_ms
        )
        del self._entries[oldest_key]
        self._evictions += 1

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at_ms]
        for full_key in expired:
            del self._entries[full_key]
        if expired:
            logger.debug(
                "Cache sweep removed %d entries (prefix=%s, remaining=%d)",
                len(expired),
                self.prefix,
                len(self._entries),
            )
        return len(expired)

    def stats(self) -> Dict[str, object]:
        now = self._clock()
        entries = list(self._entries.values())
        lookups = self._hits + self._misses
        average_age = (
            sum(now - e.created_at_ms for e in entries) / len(entries) / 1000
            if entries
            else 0.0
        )
        return {
            "prefix": self.prefix,
            "size": len(entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "average_age_seconds": average_age,
            "total_access": sum(e.access_count for e in entries),
            "expired_items": sum(1 for e in entries if now >= e.expires_at_ms),
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def start(self) -> None:
        if self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(
            self._sweep_loop(), name=f"cache-sweep-{self.prefix}"
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


def account_key(account_id: int) -> str:
    return f"id:{account_id}"


def user_accounts_key(owner_id: str) -> str:
    return f"owner:{owner_id}"


def api_key_key(key_hash: str) -> str:
    return key_hash


def usage_stats_key(owner_id: str, start: str, end: str) -> str:
    return f"{owner_id}:{start}:{end}"


@dataclass
class CacheSet:
    """The per-namespace caches owned by one gateway instance."""

    accounts: TTLCache
    api_keys: TTLCache
    usage_stats: TTLCache

    @classmethod
    def create(
        cls,
        sweep_interval_seconds: float = 300.0,
        stats_ttl_seconds: float = 300.0,
    ) -> "CacheSet":
        return cls(
            accounts=TTLCache(
                "account", 180, 500, sweep_interval_seconds=sweep_interval_seconds
            ),
            api_keys=TTLCache(
                "apikey", 600, 2000, sweep_interval_seconds=sweep_interval_seconds
            ),
            usage_stats=TTLCache(
                "usage",
                stats_ttl_seconds,
                1000,
                sweep_interval_seconds=sweep_interval_seconds,
            ),
        )

    def all(self) -> List[TTLCache]:
        return [self.accounts, self.api_keys, self.usage_stats]

    def start(self) -> None:
        for cache in self.all():
            cache.start()

    async def stop(self) -> None:
        for cache in self.all():
            await cache.stop()

    def stats(self) -> Dict[str, Dict[str, object]]:
        return {cache.prefix: cache.stats() for cache in self.all()}
