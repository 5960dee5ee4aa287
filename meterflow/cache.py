# -*- coding: utf-8 -*-
"""
Calculation Cache
=================
Async in-memory TTL cache used as a read-through cache for billing
calculations.

Entries are keyed by plain strings. Invalidation by key prefix removes
every calculation belonging to one subscription.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cached value with its expiry deadline"""
    key: str
    value: Any
    expires_at: Optional[float] = None
    hits: int = 0
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


class TTLCache:
    """
    Async TTL cache with LRU eviction.

    Exemplo:
        cache = TTLCache(default_ttl=300)
        await cache.set("sub-1:2024-06-01", calculation)
        calc = await cache.get("sub-1:2024-06-01")
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: Optional[float] = None,
        time_func: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            max_size: Numero maximo de entradas
            default_ttl: TTL padrao em segundos (None = sem expiracao)
            time_func: Fonte de tempo monotonica
        """
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._time = time_func
        self._lock = asyncio.Lock()
        self.stats = CacheStats()

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        async with self._lock:
            entry = self._entries.get(key)

            if entry is None:
                self.stats.misses += 1
                return None

            if entry.is_expired(self._time()):
                del self._entries[key]
                self.stats.misses += 1
                self.stats.expirations += 1
                return None

            self._entries.move_to_end(key)
            entry.hits += 1
            self.stats.hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            effective_ttl = ttl if ttl is not None else self._default_ttl
            expires_at = self._time() + effective_ttl if effective_ttl is not None else None

            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug(f"Cache eviction: {evicted}")

            self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def invalidate_prefix(self, prefix: str) -> int:
        """
        Remove every entry whose key starts with ``prefix``.

        Returns:
            Numero de entradas removidas
        """
        async with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            logger.debug(f"Invalidated {len(keys)} entries with prefix: {prefix}")
            return len(keys)

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    async def purge_expired(self) -> int:
        """Drop expired entries eagerly."""
        async with self._lock:
            now = self._time()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self.stats.expirations += len(expired)
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evictions": self.stats.evictions,
            "expirations": self.stats.expirations,
            "hit_rate": round(self.stats.hit_rate, 2),
        }
