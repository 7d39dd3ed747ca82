"""
Caching - Two-tier cache for suggestion results

A bounded in-process LRU (fast tier) in front of a shared, cross-process
store (shared tier, Redis). The shared tier is best-effort: when it is
unreachable the cache degrades to fast-tier-only and reports misses.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from promptlens_core.errors import CacheUnavailable
from promptlens_core.types import SuggestionResult

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_GLOB_SPECIALS = re.compile(r"([\\*?\[\]])")


def escape_glob(text: str) -> str:
    """Escape Redis MATCH glob characters so text matches literally."""
    return _GLOB_SPECIALS.sub(r"\\\1", text)


@dataclass
class CacheEntry:
    """A cached suggestion result."""

    key: str
    payload: SuggestionResult
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if entry has expired."""
        return now >= self.expires_at

    def touch(self):
        self.access_count += 1


class FastTierCache:
    """
    In-process LRU cache with per-entry TTL.

    Eviction is strict LRU and ignores remaining TTL. Expiry is checked
    lazily on read; cleanup_expired() sweeps the rest. Thread-safe.
    """

    def __init__(self, max_size: int = 500, default_ttl: float = 300.0, clock: Optional[Clock] = None):
        """
        Initialize fast tier.

        Args:
            max_size: Maximum number of entries
            default_ttl: Default time-to-live in seconds
            clock: Monotonic clock (injectable for tests)
        """
        self.max_size = max(1, max_size)
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.evictions = 0

    def get(self, key: str) -> Optional[SuggestionResult]:
        """Get payload, moving the entry to most-recently-used."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            entry.touch()
            return entry.payload

    def peek(self, key: str) -> Optional[SuggestionResult]:
        """Get payload without touching LRU order."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry.payload

    def set(self, key: str, payload: SuggestionResult, ttl: Optional[float] = None):
        """Store payload, evicting least-recently-used entries at capacity."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            while len(self._cache) >= self.max_size:
                evicted, _ = self._cache.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Fast tier evicted {evicted}")
            self._cache[key] = CacheEntry(key=key, payload=payload, expires_at=now + ttl, created_at=now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix."""
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
        return len(keys)

    def clear(self):
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        """Number of entries (expired ones included until swept)."""
        return len(self._cache)

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._cache.items() if v.is_expired(now)]
            for key in expired:
                del self._cache[key]
        return len(expired)


class SharedCacheBackend(ABC):
    """Abstract cross-process cache tier. Implementations raise CacheUnavailable."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Raw payload or None."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float):
        pass

    @abstractmethod
    async def delete(self, key: str):
        pass

    @abstractmethod
    async def scan_prefix(self, prefix: str) -> List[str]:
        """Keys starting with prefix."""
        pass

    async def close(self):
        pass


class RedisSharedCache(SharedCacheBackend):
    """Shared tier backed by Redis (redis.asyncio)."""

    def __init__(self, url: str, client: Any = None):
        self.url = url
        self._client = client

    async def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._get_client()
            return await client.get(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis get failed: {e}") from e

    async def set(self, key: str, value: str, ttl: float):
        try:
            client = await self._get_client()
            await client.setex(key, max(1, int(ttl)), value)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis set failed: {e}") from e

    async def delete(self, key: str):
        try:
            client = await self._get_client()
            await client.delete(key)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis delete failed: {e}") from e

    async def scan_prefix(self, prefix: str) -> List[str]:
        try:
            client = await self._get_client()
            return [k async for k in client.scan_iter(match=f"{escape_glob(prefix)}*") if k.startswith(prefix)]
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis scan failed: {e}") from e

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class TieredCache:
    """
    Fast tier in front of an optional shared tier.

    Reads check the fast tier first; a shared-tier hit back-fills the fast
    tier. Writes go to both tiers, the shared tier with the longer TTL.
    Shared-tier failures are logged and treated as misses.
    """

    def __init__(
        self,
        fast: Optional[FastTierCache] = None,
        shared: Optional[SharedCacheBackend] = None,
        shared_ttl: float = 3600.0,
        monitor: Any = None,
    ):
        self.fast = fast or FastTierCache()
        self.shared = shared
        self.shared_ttl = shared_ttl
        self.monitor = monitor
        self.hits: Dict[str, int] = {"fast": 0, "shared": 0}
        self.misses = 0
        self.shared_errors = 0
        self._sweeper: Optional[asyncio.Task] = None
        self._cleanups: Set[asyncio.Task] = set()

    def peek_local(self, key: str) -> Optional[SuggestionResult]:
        """Synchronous fast-tier lookup."""
        return self.fast.get(key)

    async def get(self, key: str) -> Tuple[Optional[SuggestionResult], Optional[str]]:
        """
        Look a key up in both tiers.

        Returns:
            (result, tier) where tier is "fast", "shared" or None on miss
        """
        result = self.fast.get(key)
        if result is not None:
            self._record_hit("fast")
            return result, "fast"

        if self.shared is not None:
            try:
                raw = await self.shared.get(key)
            except CacheUnavailable as e:
                self.shared_errors += 1
                logger.warning(f"Shared cache unavailable on read, treating as miss: {e}")
                raw = None
            if raw is not None:
                try:
                    result = SuggestionResult.from_dict(json.loads(raw))
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning(f"Discarding undecodable shared cache entry {key}: {e}")
                    result = None
                if result is not None:
                    self.fast.set(key, result)
                    self._record_hit("shared")
                    return result, "shared"

        self.misses += 1
        if self.monitor is not None:
            self.monitor.record_cache_miss()
        return None, None

    async def set(self, key: str, payload: SuggestionResult, ttl: Optional[float] = None):
        """
        Write-through to both tiers.

        The shared tier is written first and the fast tier only once that
        write has returned. A write cancelled half-way leaves no fast-tier
        entry, and a best-effort delete is scheduled for the shared key.
        """
        if self.shared is not None:
            shared_ttl = max(ttl if ttl is not None else self.fast.default_ttl, self.shared_ttl)
            try:
                await self.shared.set(key, json.dumps(payload.to_dict()), shared_ttl)
            except CacheUnavailable as e:
                self.shared_errors += 1
                logger.warning(f"Shared cache unavailable on write, keeping fast tier only: {e}")
            except asyncio.CancelledError:
                logger.debug(f"Cache write for {key} cancelled, discarding shared entry")
                task = asyncio.ensure_future(self._discard_shared(key))
                self._cleanups.add(task)
                task.add_done_callback(self._cleanups.discard)
                raise
        self.fast.set(key, payload, ttl)

    async def _discard_shared(self, key: str):
        try:
            await self.shared.delete(key)
        except CacheUnavailable as e:
            self.shared_errors += 1
            logger.warning(f"Could not discard cancelled shared entry {key}: {e}")

    async def invalidate(self, prefix: str) -> int:
        """Remove every entry matching prefix from both tiers."""
        removed = self.fast.delete_prefix(prefix)
        if self.shared is not None:
            try:
                keys = await self.shared.scan_prefix(prefix)
                for key in keys:
                    await self.shared.delete(key)
                removed = max(removed, len(keys))
            except CacheUnavailable as e:
                self.shared_errors += 1
                logger.warning(f"Shared cache unavailable on invalidate({prefix}): {e}")
        logger.info(f"Invalidated {removed} cache entries with prefix {prefix}")
        return removed

    def _record_hit(self, tier: str):
        self.hits[tier] += 1
        if self.monitor is not None:
            self.monitor.record_cache_hit(tier)

    @property
    def hit_rate(self) -> float:
        total = sum(self.hits.values()) + self.misses
        return sum(self.hits.values()) / total if total > 0 else 0.0

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "fast_size": self.fast.size(),
            "fast_max_size": self.fast.max_size,
            "fast_evictions": self.fast.evictions,
            "hits": dict(self.hits),
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 3),
            "shared_enabled": self.shared is not None,
            "shared_errors": self.shared_errors,
        }

    # Background sweep of expired fast-tier entries

    def start_sweeper(self, interval: float = 60.0) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        return self._sweeper

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            removed = self.fast.cleanup_expired()
            if removed:
                logger.debug(f"Swept {removed} expired fast-tier entries")

    async def stop_sweeper(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def close(self):
        await self.stop_sweeper()
        if self.shared is not None:
            await self.shared.close()
