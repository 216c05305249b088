"""
Layered in-memory cache for per-store engine data.

Entries are addressed by (store, layer, key). Every layer carries its own
TTL so volatile inventory rows expire long before catalog data does. Reads
never return an expired entry; when an event loop is running, insertion also
schedules the entry's removal.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheLayer(str, Enum):
    """Data classes held by the cache, each with its own TTL."""

    PRODUCTS = "products"
    RECIPE_INGREDIENTS = "recipe_ingredients"
    INVENTORY = "inventory"
    CART_VALIDATION = "cart_validation"
    BATCHED_DATA = "batched_data"


DEFAULT_LAYER_TTLS: Dict[CacheLayer, float] = {
    CacheLayer.PRODUCTS: 30 * 60,
    CacheLayer.RECIPE_INGREDIENTS: 15 * 60,
    CacheLayer.INVENTORY: 5 * 60,
    CacheLayer.CART_VALIDATION: 2 * 60,
    CacheLayer.BATCHED_DATA: 10 * 60,
}

CacheKey = Tuple[Hashable, CacheLayer, str]

# Well-known keys in the products layer
ESSENTIAL_PRODUCTS_KEY = "essential"
DETAILED_PRODUCTS_KEY = "detailed"


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float
    expiry_handle: Optional[asyncio.TimerHandle] = None

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class StoreDataCache:
    """Store/layer partitioned cache with TTL support and size limit."""

    MAX_ENTRIES = 10000  # Prevent unbounded memory growth

    def __init__(
        self,
        layer_ttls: Optional[Dict[CacheLayer, float]] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttls = dict(DEFAULT_LAYER_TTLS)
        if layer_ttls:
            self._ttls.update({CacheLayer(k): v for k, v in layer_ttls.items()})
        self._max_entries = max_entries or self.MAX_ENTRIES
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def ttl_for(self, layer: CacheLayer) -> float:
        return self._ttls[CacheLayer(layer)]

    def get(self, store_id: Hashable, layer: CacheLayer, key: str) -> Optional[Any]:
        """Get value from cache if present and not expired."""
        cache_key = (store_id, CacheLayer(layer), key)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                self._remove(cache_key)
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(
        self,
        store_id: Hashable,
        layer: CacheLayer,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
    ) -> None:
        """Store a value tagged with its layer's TTL. None is not cacheable.

        ``ttl`` can only shorten the layer's TTL, for values derived from
        entries that expire sooner.
        """
        if value is None:
            return
        layer = CacheLayer(layer)
        cache_key = (store_id, layer, key)
        ttl = self._ttls[layer] if ttl is None else min(ttl, self._ttls[layer])
        if ttl <= 0:
            self.delete(store_id, layer, key)
            return
        with self._lock:
            self._remove(cache_key)
            if len(self._entries) >= self._max_entries:
                self._evict()
            entry = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)
            self._entries[cache_key] = entry
            entry.expiry_handle = self._schedule_expiry(cache_key, entry)

    def remaining_ttl(self, store_id: Hashable, layer: CacheLayer, key: str) -> Optional[float]:
        """Seconds until the entry expires, or None when it is missing or expired."""
        with self._lock:
            entry = self._entries.get((store_id, CacheLayer(layer), key))
            if entry is None:
                return None
            remaining = entry.ttl - (self._clock() - entry.stored_at)
            return remaining if remaining >= 0 else None

    def delete(self, store_id: Hashable, layer: CacheLayer, key: str) -> bool:
        with self._lock:
            return self._remove((store_id, CacheLayer(layer), key))

    def invalidate_layer(self, store_id: Hashable, layer: CacheLayer) -> int:
        """Remove every entry of one layer for one store."""
        layer = CacheLayer(layer)
        with self._lock:
            keys = [k for k in self._entries if k[0] == store_id and k[1] is layer]
            for k in keys:
                self._remove(k)
        if keys:
            logger.debug(f"Invalidated {len(keys)} '{layer.value}' entries for store {store_id}")
        return len(keys)

    def invalidate_layer_all_stores(self, layer: CacheLayer) -> int:
        layer = CacheLayer(layer)
        with self._lock:
            keys = [k for k in self._entries if k[1] is layer]
            for k in keys:
                self._remove(k)
        return len(keys)

    def delete_all_stores(self, layer: CacheLayer, key: str) -> int:
        """Remove one key of a layer for every store."""
        layer = CacheLayer(layer)
        with self._lock:
            keys = [k for k in self._entries if k[1] is layer and k[2] == key]
            for k in keys:
                self._remove(k)
        return len(keys)

    def clear_store(self, store_id: Hashable) -> int:
        """Remove everything cached for a store."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == store_id]
            for k in keys:
                self._remove(k)
        logger.debug(f"Cleared {len(keys)} cache entries for store {store_id}")
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            for k in list(self._entries):
                self._remove(k)

    def stats(self) -> dict:
        """Get cache statistics."""
        now = self._clock()
        with self._lock:
            valid = sum(1 for e in self._entries.values() if not e.is_expired(now))
            per_layer: Dict[str, int] = {}
            for _, layer, _ in self._entries:
                per_layer[layer.value] = per_layer.get(layer.value, 0) + 1
            return {
                "total_keys": len(self._entries),
                "valid_keys": valid,
                "expired_keys": len(self._entries) - valid,
                "hits": self._hits,
                "misses": self._misses,
                "layers": per_layer,
            }

    def _remove(self, cache_key: CacheKey) -> bool:
        entry = self._entries.pop(cache_key, None)
        if entry is None:
            return False
        if entry.expiry_handle is not None:
            entry.expiry_handle.cancel()
        return True

    def _evict(self) -> None:
        """Drop expired entries, then the oldest ones if still at the limit."""
        now = self._clock()
        for k in [k for k, e in self._entries.items() if e.is_expired(now)]:
            self._remove(k)
        if len(self._entries) >= self._max_entries:
            oldest = sorted(self._entries, key=lambda k: self._entries[k].stored_at)[:100]
            for k in oldest:
                self._remove(k)

    def _schedule_expiry(self, cache_key: CacheKey, entry: CacheEntry) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread; the read-time check still applies
            return None
        return loop.call_later(entry.ttl, self._expire, cache_key, entry)

    def _expire(self, cache_key: CacheKey, entry: CacheEntry) -> None:
        with self._lock:
            if self._entries.get(cache_key) is entry:
                del self._entries[cache_key]
