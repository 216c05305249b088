"""Change-Notification Listener - invalidates cached store data on table changes.

Change events arrive as JSON on Redis channels ``<prefix>:<anything>``:

    {"table": "inventory_stock", "store_id": 3, "operation": "UPDATE"}

Invalidation is trailing-edge debounced per store, so a burst of row updates
from one receiving run causes a single invalidation. Kinds seen inside the
window are merged. An event without a store id applies to every store.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet, Iterable, Optional, Set, Union

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from inventory_engine.core.cache import DETAILED_PRODUCTS_KEY, CacheLayer, StoreDataCache

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    INVENTORY_STOCK = "inventory_stock"
    PRODUCT_CATALOG = "product_catalog"
    RECIPE_INGREDIENTS = "recipe_ingredients"


LAYERS_BY_KIND: Dict[ChangeKind, FrozenSet[CacheLayer]] = {
    ChangeKind.INVENTORY_STOCK: frozenset(
        {CacheLayer.INVENTORY, CacheLayer.BATCHED_DATA, CacheLayer.CART_VALIDATION}
    ),
    ChangeKind.PRODUCT_CATALOG: frozenset(
        {CacheLayer.PRODUCTS, CacheLayer.BATCHED_DATA, CacheLayer.CART_VALIDATION}
    ),
    ChangeKind.RECIPE_INGREDIENTS: frozenset(
        {CacheLayer.RECIPE_INGREDIENTS, CacheLayer.BATCHED_DATA, CacheLayer.CART_VALIDATION}
    ),
}

# Kinds that make the cached detailed availability stale
RESETS_DETAILED = frozenset({ChangeKind.INVENTORY_STOCK, ChangeKind.RECIPE_INGREDIENTS})


class ChangeEventPayload(BaseModel):
    table: ChangeKind
    store_id: Optional[int] = None
    operation: Optional[str] = None


class ChangeNotificationListener:
    """Debounces change events and applies them to the cache."""

    def __init__(self, cache: StoreDataCache, debounce_seconds: float = 0.5):
        self.cache = cache
        self.debounce_seconds = debounce_seconds
        self._pending: Dict[Optional[int], Set[ChangeKind]] = {}
        self._handles: Dict[Optional[int], asyncio.TimerHandle] = {}

    def handle_message(self, data: Union[str, bytes]) -> bool:
        """Parse a raw channel message. Malformed messages are logged and dropped."""
        try:
            payload = ChangeEventPayload.model_validate(json.loads(data))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring malformed change event {data!r}: {e}")
            return False
        self.handle_event(payload)
        return True

    def handle_event(self, event: ChangeEventPayload) -> None:
        """Queue an event; must be called from the running event loop."""
        key = event.store_id
        self._pending.setdefault(key, set()).add(event.table)
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.debounce_seconds, self._flush, key)

    def apply(self, store_id: Optional[int], kinds: Iterable[ChangeKind]) -> int:
        """Invalidate the layers affected by ``kinds``; returns entries removed."""
        kinds = set(kinds)
        layers: Set[CacheLayer] = set()
        for kind in kinds:
            layers |= LAYERS_BY_KIND[kind]

        removed = 0
        for layer in layers:
            if store_id is None:
                removed += self.cache.invalidate_layer_all_stores(layer)
            else:
                removed += self.cache.invalidate_layer(store_id, layer)

        if kinds & RESETS_DETAILED and CacheLayer.PRODUCTS not in layers:
            if store_id is None:
                removed += self.cache.delete_all_stores(CacheLayer.PRODUCTS, DETAILED_PRODUCTS_KEY)
            elif self.cache.delete(store_id, CacheLayer.PRODUCTS, DETAILED_PRODUCTS_KEY):
                removed += 1

        target = "all stores" if store_id is None else f"store {store_id}"
        logger.info(
            f"Cache invalidated for {target} after {sorted(k.value for k in kinds)} changes "
            f"({removed} entries)"
        )
        return removed

    def pending_stores(self) -> Set[Optional[int]]:
        return set(self._pending)

    def flush_all(self) -> None:
        """Apply every pending invalidation now."""
        for key in list(self._handles):
            self._handles.pop(key).cancel()
        for key in list(self._pending):
            self.apply(key, self._pending.pop(key))

    def close(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._pending.clear()

    async def run(self, messages: AsyncIterator[Union[str, bytes]]) -> None:
        """Consume raw messages until the source ends or the task is cancelled."""
        try:
            async for data in messages:
                self.handle_message(data)
        finally:
            self.close()

    def _flush(self, key: Optional[int]) -> None:
        self._handles.pop(key, None)
        kinds = self._pending.pop(key, None)
        if kinds:
            self.apply(key, kinds)


class RedisChangeSource:
    """Yields change messages from Redis pub/sub, reconnecting on failure."""

    def __init__(self, redis_url: str, channel_prefix: str, retry_seconds: float = 5.0):
        self.redis_url = redis_url
        self.pattern = f"{channel_prefix}:*"
        self.retry_seconds = retry_seconds

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        while True:
            client = aioredis.from_url(self.redis_url)
            pubsub = client.pubsub()
            try:
                await pubsub.psubscribe(self.pattern)
                logger.info(f"Listening for change events on '{self.pattern}'")
                async for message in pubsub.listen():
                    if message.get("type") in ("pmessage", "message"):
                        yield message["data"]
            except (RedisConnectionError, OSError) as e:
                logger.warning(
                    f"Change channel unavailable: {e}. Retrying in {self.retry_seconds:g}s"
                )
            finally:
                await pubsub.aclose()
                await client.aclose()
            await asyncio.sleep(self.retry_seconds)

    async def ping(self) -> bool:
        client = aioredis.from_url(self.redis_url, socket_connect_timeout=2)
        try:
            return bool(await client.ping())
        finally:
            await client.aclose()
