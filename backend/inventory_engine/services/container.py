"""Wires the engine components together from settings.

Each component receives its collaborators explicitly; there are no
module-level caches. One InventoryEngine is built per application.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from inventory_engine.core.cache import CacheLayer, StoreDataCache
from inventory_engine.core.config import Settings
from inventory_engine.core.dedupe import RequestDeduplicator
from inventory_engine.services.availability import (
    CartItem,
    CartValidation,
    ProductAvailability,
    compute_availability,
    compute_store_availability,
    validate_cart,
)
from inventory_engine.services.change_listener import ChangeNotificationListener
from inventory_engine.services.ingredient_matcher import IngredientMatcher
from inventory_engine.services.progressive_loader import ProgressiveLoader
from inventory_engine.services.repository import InventoryRepository
from inventory_engine.services.snapshot import BatchedSnapshotFetcher
from inventory_engine.services.stock_deduction_service import StockDeductionService

logger = logging.getLogger(__name__)


@dataclass
class InventoryEngine:
    settings: Settings
    repository: InventoryRepository
    cache: StoreDataCache
    deduplicator: RequestDeduplicator
    fetcher: BatchedSnapshotFetcher
    deductions: StockDeductionService
    loader: ProgressiveLoader
    listener: ChangeNotificationListener

    async def store_availability(self, store_id: int) -> list:
        snapshot = await self.fetcher.fetch_store_snapshot(store_id)
        return compute_store_availability(
            snapshot, self.settings.low_stock_threshold, self.settings.direct_sale_quantity
        )

    async def product_availability(self, store_id: int, product_id: int) -> Optional[ProductAvailability]:
        snapshot = await self.fetcher.fetch_cart_snapshot(store_id, [product_id])
        product = snapshot.product(product_id)
        if product is None:
            return None
        return compute_availability(
            product, snapshot, self.settings.low_stock_threshold, self.settings.direct_sale_quantity
        )

    async def validate_cart(self, store_id: int, items: list) -> CartValidation:
        cart = [CartItem(product_id=i.product_id, quantity=i.quantity) for i in items]
        key = "validation:" + ",".join(f"{c.product_id}x{c.quantity}" for c in sorted(
            cart, key=lambda c: (c.product_id, c.quantity)))
        cached = self.cache.get(store_id, CacheLayer.CART_VALIDATION, key)
        if cached is not None:
            return cached

        product_ids = [i.product_id for i in cart]
        snapshot = await self.fetcher.fetch_cart_snapshot(store_id, product_ids)
        validation = validate_cart(
            snapshot, cart, self.settings.low_stock_threshold, self.settings.direct_sale_quantity
        )
        # Expire with the snapshot the verdict was computed from
        self.cache.set(
            store_id, CacheLayer.CART_VALIDATION, key, validation,
            ttl=self.fetcher.remaining_ttl(store_id, product_ids) or 0,
        )
        return validation

    def clear_store_cache(self, store_id: int) -> int:
        return self.cache.clear_store(store_id)


def build_inventory_engine(settings: Settings, session_factory: sessionmaker) -> InventoryEngine:
    cache = StoreDataCache(
        layer_ttls={
            CacheLayer.PRODUCTS: settings.cache_ttl_products_seconds,
            CacheLayer.RECIPE_INGREDIENTS: settings.cache_ttl_recipe_ingredients_seconds,
            CacheLayer.INVENTORY: settings.cache_ttl_inventory_seconds,
            CacheLayer.CART_VALIDATION: settings.cache_ttl_cart_validation_seconds,
            CacheLayer.BATCHED_DATA: settings.cache_ttl_batched_data_seconds,
        },
        max_entries=settings.cache_max_entries,
    )
    deduplicator = RequestDeduplicator(window_seconds=settings.dedupe_window_seconds)
    repository = InventoryRepository(session_factory)
    fetcher = BatchedSnapshotFetcher(repository, cache, deduplicator)

    engine = InventoryEngine(
        settings=settings,
        repository=repository,
        cache=cache,
        deduplicator=deduplicator,
        fetcher=fetcher,
        deductions=StockDeductionService(
            repository,
            IngredientMatcher(threshold=settings.fuzzy_match_threshold),
            cache=cache,
            chunk_size=settings.deduction_chunk_size,
            write_retries=settings.deduction_write_retries,
            default_timeout=settings.deduction_timeout_seconds,
        ),
        loader=ProgressiveLoader(
            repository,
            fetcher,
            cache,
            chunk_size=settings.progress_chunk_size,
            low_stock_threshold=settings.low_stock_threshold,
            direct_sale_quantity=settings.direct_sale_quantity,
        ),
        listener=ChangeNotificationListener(cache, settings.invalidation_debounce_seconds),
    )
    logger.debug("Inventory engine components built")
    return engine
