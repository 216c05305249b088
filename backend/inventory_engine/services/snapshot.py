"""Batched Snapshot Fetcher - catalog, recipe and stock data in constant queries.

A snapshot is built from three queries regardless of catalog size:

1. Products with their category and recipe header
2. All inventory rows of the store (concurrently with 1)
3. Ingredient lines of the recipes referenced by 1, restricted to the store

Inventory rows and ingredient lines are cached in their own layers so an
inventory change only re-runs query 2. Ingredients are enriched with current
stock when the snapshot is assembled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from inventory_engine.core.cache import CacheLayer, StoreDataCache
from inventory_engine.core.dedupe import RequestDeduplicator
from inventory_engine.services.exceptions import FetchError
from inventory_engine.services.repository import (
    IngredientMappingRow,
    InventoryRepository,
    InventoryRow,
    ProductRow,
)

logger = logging.getLogger(__name__)

STORE_SNAPSHOT_KEY = "store"
INVENTORY_ROWS_KEY = "rows"


def cart_cache_key(product_ids: Sequence[int]) -> str:
    return "cart:" + ",".join(str(i) for i in sorted(set(product_ids)))


@dataclass(frozen=True)
class SnapshotRecipeIngredient:
    """A recipe ingredient joined with the stock row it draws from."""

    id: int
    recipe_id: int
    ingredient_name: str
    required_quantity: Decimal
    unit: str
    inventory_stock_id: Optional[int] = None
    inventory_item: Optional[str] = None
    inventory_stock: Optional[Decimal] = None
    inventory_active: bool = False
    position: int = 0

    @property
    def is_mapped(self) -> bool:
        return self.inventory_stock_id is not None and self.inventory_stock is not None


@dataclass
class BatchedSnapshot:
    store_id: int
    products: List[ProductRow]
    inventory: List[InventoryRow]
    recipe_ingredients: Dict[int, List[SnapshotRecipeIngredient]]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    fetch_time_ms: float = 0.0
    # Served from the last-good copy after a failed refresh
    stale: bool = False

    def __post_init__(self):
        self._products_by_id = {p.id: p for p in self.products}

    def product(self, product_id: int) -> Optional[ProductRow]:
        return self._products_by_id.get(product_id)

    def ingredients_for(self, recipe_id: Optional[int]) -> List[SnapshotRecipeIngredient]:
        if recipe_id is None:
            return []
        return self.recipe_ingredients.get(recipe_id, [])


def assemble_snapshot(
    store_id: int,
    products: Sequence[ProductRow],
    inventory: Sequence[InventoryRow],
    mapping_rows: Sequence[IngredientMappingRow],
    fetch_time_ms: float = 0.0,
) -> BatchedSnapshot:
    """Join ingredient lines to stock rows. Rows from another store count as unmapped."""
    stock_by_id = {row.id: row for row in inventory if row.store_id == store_id}
    by_recipe: Dict[int, List[SnapshotRecipeIngredient]] = {}
    for line in mapping_rows:
        stock = stock_by_id.get(line.inventory_stock_id) if line.inventory_stock_id else None
        by_recipe.setdefault(line.recipe_id, []).append(
            SnapshotRecipeIngredient(
                id=line.id,
                recipe_id=line.recipe_id,
                ingredient_name=line.ingredient_name,
                required_quantity=line.quantity,
                unit=line.unit,
                inventory_stock_id=stock.id if stock else None,
                inventory_item=stock.item if stock else None,
                inventory_stock=stock.stock_quantity if stock else None,
                inventory_active=stock.is_active if stock else False,
                position=line.position,
            )
        )
    return BatchedSnapshot(
        store_id=store_id,
        products=list(products),
        inventory=list(inventory),
        recipe_ingredients=by_recipe,
        fetch_time_ms=fetch_time_ms,
    )


class BatchedSnapshotFetcher:
    """Builds snapshots through the cache and the request deduplicator.

    A cached snapshot never outlives the inventory rows it was built from:
    store snapshots reuse cached rows but expire with them, and cart
    snapshots always read stock fresh because they gate checkout.
    """

    def __init__(
        self,
        repository: InventoryRepository,
        cache: StoreDataCache,
        deduplicator: RequestDeduplicator,
    ):
        self.repository = repository
        self.cache = cache
        self.deduplicator = deduplicator
        # Last successfully built store snapshot, kept outside the TTL'd layers
        self._last_good: Dict[int, BatchedSnapshot] = {}

    async def fetch_store_snapshot(self, store_id: int, force_refresh: bool = False) -> BatchedSnapshot:
        """Snapshot of every product in the store. Raises FetchError on backend failure."""
        if not force_refresh:
            cached = self.cache.get(store_id, CacheLayer.BATCHED_DATA, STORE_SNAPSHOT_KEY)
            if cached is not None:
                return cached

        return await self.deduplicator.dedupe(
            f"store_snapshot:{store_id}:",
            lambda: self._build(
                store_id, None, CacheLayer.BATCHED_DATA, STORE_SNAPSHOT_KEY, fresh_stock=force_refresh
            ),
        )

    async def fetch_cart_snapshot(self, store_id: int, product_ids: Sequence[int]) -> BatchedSnapshot:
        """Snapshot restricted to the given products, for checkout-time validation."""
        ids = sorted(set(product_ids))
        joined = ",".join(str(i) for i in ids)
        cache_key = cart_cache_key(ids)
        cached = self.cache.get(store_id, CacheLayer.CART_VALIDATION, cache_key)
        if cached is not None:
            return cached

        return await self.deduplicator.dedupe(
            f"cart_snapshot:{store_id}:{joined}",
            lambda: self._build(store_id, ids, CacheLayer.CART_VALIDATION, cache_key, fresh_stock=True),
        )

    def remaining_ttl(self, store_id: int, product_ids: Optional[Sequence[int]] = None) -> Optional[float]:
        """Seconds the cached store (or cart) snapshot may still be served for."""
        if product_ids is None:
            return self.cache.remaining_ttl(store_id, CacheLayer.BATCHED_DATA, STORE_SNAPSHOT_KEY)
        return self.cache.remaining_ttl(store_id, CacheLayer.CART_VALIDATION, cart_cache_key(product_ids))

    def last_good_store_snapshot(self, store_id: int) -> Optional[BatchedSnapshot]:
        """Most recent successfully built store snapshot, marked stale.

        Kept regardless of cache TTLs and invalidations, for callers falling
        back after a FetchError. ``fetched_at`` tells how old its stock is.
        """
        snapshot = self._last_good.get(store_id)
        if snapshot is None:
            return None
        return replace(snapshot, stale=True)

    async def _build(
        self,
        store_id: int,
        product_ids: Optional[List[int]],
        layer: CacheLayer,
        cache_key: str,
        fresh_stock: bool = False,
    ) -> BatchedSnapshot:
        started = time.perf_counter()
        operation = "store snapshot" if product_ids is None else "cart snapshot"
        try:
            products, (inventory, stock_ttl) = await asyncio.gather(
                asyncio.to_thread(self.repository.fetch_products, store_id, product_ids),
                self._inventory_rows(store_id, fresh_stock),
            )
            recipe_ids = sorted({p.recipe_id for p in products if p.recipe_id is not None})
            mapping_rows = await self._mapping_rows(store_id, recipe_ids)
        except FetchError:
            raise
        except Exception as e:
            logger.error(f"Failed to build {operation} for store {store_id}: {e}")
            raise FetchError(operation, store_id, e) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        snapshot = assemble_snapshot(store_id, products, inventory, mapping_rows, elapsed_ms)
        self.cache.set(store_id, layer, cache_key, snapshot, ttl=stock_ttl)
        if product_ids is None:
            self._last_good[store_id] = snapshot
        logger.debug(
            f"Built {operation} for store {store_id}: {len(products)} products, "
            f"{len(inventory)} inventory rows in {elapsed_ms:.1f}ms"
        )
        return snapshot

    async def _inventory_rows(self, store_id: int, fresh: bool = False) -> Tuple[List[InventoryRow], float]:
        """Inventory rows and the seconds they may still be served for."""
        if not fresh:
            cached = self.cache.get(store_id, CacheLayer.INVENTORY, INVENTORY_ROWS_KEY)
            remaining = self.cache.remaining_ttl(store_id, CacheLayer.INVENTORY, INVENTORY_ROWS_KEY)
            if cached is not None and remaining is not None:
                return cached, remaining
        rows = await asyncio.to_thread(self.repository.fetch_inventory, store_id)
        self.cache.set(store_id, CacheLayer.INVENTORY, INVENTORY_ROWS_KEY, rows)
        return rows, self.cache.ttl_for(CacheLayer.INVENTORY)

    async def _mapping_rows(self, store_id: int, recipe_ids: List[int]) -> List[IngredientMappingRow]:
        if not recipe_ids:
            return []
        key = "recipes:" + ",".join(str(i) for i in recipe_ids)
        cached = self.cache.get(store_id, CacheLayer.RECIPE_INGREDIENTS, key)
        if cached is not None:
            return cached
        rows = await asyncio.to_thread(self.repository.fetch_recipe_ingredient_rows, store_id, recipe_ids)
        self.cache.set(store_id, CacheLayer.RECIPE_INGREDIENTS, key, rows)
        return rows
