"""Response Cache: TTL store of provider results keyed by request fingerprint.

Two tiers:
  - L1: bounded in-memory LRU (instant access)
  - L2: durable key-value store, ``cache:{fingerprint}`` (source of truth on cold start)

TTL semantics for ``set``:
  - ttl=None → default TTL (1 hour)
  - ttl=0    → do not cache; any existing entry for the key is dropped
  - ttl<0    → ValueError

Expiry is checked lazily on read; ``purge_expired`` is an optional janitor.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from wellness_ai.core.metrics import CACHE_LOOKUPS
from wellness_ai.gateway.clock import Clock
from wellness_ai.gateway.types import CacheEntry
from wellness_ai.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache:"
DEFAULT_TTL = 3600.0
MEMORY_MAX_ENTRIES = 50


class ResponseCache:
    """Read-through / write-through tiered cache.

    Usage:
        cache = ResponseCache(store, clock)

        value = await cache.get(fp)
        if value is None:
            value = await call_provider()
            await cache.set(fp, value)            # default TTL
            await cache.set(fp, value, ttl=0)     # explicitly not cached
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        default_ttl: float = DEFAULT_TTL,
        memory_max_entries: int = MEMORY_MAX_ENTRIES,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._store = store
        self._clock = clock
        self.default_ttl = default_ttl
        self.memory_max_entries = memory_max_entries
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _store_key(key: str) -> str:
        return f"{KEY_PREFIX}{key}"

    def _remember(self, entry: CacheEntry) -> None:
        self._memory[entry.key] = entry
        self._memory.move_to_end(entry.key)
        while len(self._memory) > self.memory_max_entries:
            self._memory.popitem(last=False)

    async def get(self, key: str) -> bytes | None:
        """Return the cached value, or None on miss/expiry."""
        now = self._clock.now()

        entry = self._memory.get(key)
        if entry is not None:
            if not entry.is_expired(now):
                self._memory.move_to_end(key)
                self.hits += 1
                CACHE_LOOKUPS.labels(result="memory_hit").inc()
                return entry.value
            del self._memory[key]

        data = await self._store.get(self._store_key(key))
        if data is not None:
            try:
                entry = CacheEntry.from_dict(key, data)
            except (KeyError, ValueError):
                logger.warning("Dropping unreadable cache entry %s", key)
                await self._store.delete(self._store_key(key))
                entry = None

            if entry is not None and not entry.is_expired(now):
                self._remember(entry)
                self.hits += 1
                CACHE_LOOKUPS.labels(result="store_hit").inc()
                return entry.value
            if entry is not None:
                await self._store.delete(self._store_key(key))

        self.misses += 1
        CACHE_LOOKUPS.labels(result="miss").inc()
        return None

    async def set(self, key: str, value: bytes, ttl: float | None = None) -> None:
        """Store a value. ``ttl=0`` means "never cache", not "use the default"."""
        if ttl is None:
            ttl = self.default_ttl
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        if ttl == 0:
            await self.invalidate(key)
            logger.debug("Not caching %s (ttl=0)", key)
            return

        now = self._clock.now()
        entry = CacheEntry(key=key, value=value, inserted_at=now, expires_at=now + ttl)
        await self._store.set(self._store_key(key), entry.to_dict())
        self._remember(entry)

    async def invalidate(self, key: str) -> None:
        self._memory.pop(key, None)
        await self._store.delete(self._store_key(key))

    async def clear(self) -> int:
        """Drop every entry. Returns the number of durable entries removed."""
        self._memory.clear()
        rows = await self._store.scan(KEY_PREFIX)
        for store_key, _ in rows:
            await self._store.delete(store_key)
        logger.info("Response cache cleared (%d entries)", len(rows))
        return len(rows)

    async def purge_expired(self) -> int:
        """Janitor pass: remove expired entries from both tiers."""
        now = self._clock.now()
        for key in [k for k, e in self._memory.items() if e.is_expired(now)]:
            del self._memory[key]

        removed = 0
        for store_key, data in await self._store.scan(KEY_PREFIX):
            if float(data.get("expires_at", 0.0)) <= now:
                await self._store.delete(store_key)
                removed += 1
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    def get_stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "memory_entries": len(self._memory),
            "memory_max_entries": self.memory_max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "default_ttl": self.default_ttl,
        }
