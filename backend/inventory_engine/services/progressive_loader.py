"""Progressive Loader - product grid first, stock-derived details after.

``load_essential`` returns what a product grid needs from one lightweight
query. ``load_detailed_in_background`` then runs the availability calculator
over the full store snapshot and reports progress in fixed-size steps. The
two results are cached under separate keys so a failed detailed load leaves
the essential view intact.

When the store snapshot cannot be fetched, the detailed load falls back to
the fetcher's last-good snapshot. Those results are returned but never
cached.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from inventory_engine.core.cache import (
    DETAILED_PRODUCTS_KEY,
    ESSENTIAL_PRODUCTS_KEY,
    CacheLayer,
    StoreDataCache,
)
from inventory_engine.core.dedupe import RequestDeduplicator
from inventory_engine.services.availability import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    DIRECT_SALE_QUANTITY,
    ProductAvailability,
    compute_availability,
)
from inventory_engine.services.exceptions import FetchError
from inventory_engine.services.repository import EssentialProductRow, InventoryRepository
from inventory_engine.services.snapshot import BatchedSnapshotFetcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["LoadProgress"], Any]


@dataclass
class LoadProgress:
    store_id: int
    processed: int
    total: int

    @property
    def percent(self) -> float:
        return 100.0 if self.total == 0 else round(self.processed / self.total * 100, 1)


@dataclass
class EssentialProduct:
    id: int
    name: str
    price: Decimal
    image_url: Optional[str]
    category_name: Optional[str]
    is_available: bool

    @classmethod
    def from_row(cls, row: EssentialProductRow) -> "EssentialProduct":
        return cls(
            id=row.id,
            name=row.name,
            price=row.price,
            image_url=row.image_url,
            category_name=row.category_name,
            is_available=row.is_available,
        )


class ProgressiveLoader:
    """Two-phase product loading for a store."""

    def __init__(
        self,
        repository: InventoryRepository,
        fetcher: BatchedSnapshotFetcher,
        cache: StoreDataCache,
        chunk_size: int = 10,
        low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
        direct_sale_quantity: int = DIRECT_SALE_QUANTITY,
    ):
        self.repository = repository
        self.fetcher = fetcher
        self.cache = cache
        self.chunk_size = chunk_size
        self.low_stock_threshold = low_stock_threshold
        self.direct_sale_quantity = direct_sale_quantity
        # Detailed loads coalesce for as long as the first one runs
        self._detailed_loads = RequestDeduplicator(window_seconds=None)
        self._tasks: set = set()

    async def load_essential(self, store_id: int) -> List[EssentialProduct]:
        cached = self.cache.get(store_id, CacheLayer.PRODUCTS, ESSENTIAL_PRODUCTS_KEY)
        if cached is not None:
            return cached
        try:
            rows = await asyncio.to_thread(self.repository.fetch_essential_products, store_id)
        except Exception as e:
            logger.error(f"Essential product load failed for store {store_id}: {e}")
            raise FetchError("essential products", store_id, e) from e

        products = [EssentialProduct.from_row(r) for r in rows]
        self.cache.set(store_id, CacheLayer.PRODUCTS, ESSENTIAL_PRODUCTS_KEY, products)
        return products

    async def load_detailed_in_background(
        self,
        store_id: int,
        essential: Optional[Sequence[EssentialProduct]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[int, ProductAvailability]:
        """Availability of every product, keyed by product id.

        A concurrent call for the same store waits on the running load. Only
        the first caller's ``on_progress`` receives progress updates.
        """
        cached = self.cache.get(store_id, CacheLayer.PRODUCTS, DETAILED_PRODUCTS_KEY)
        if cached is not None:
            if on_progress is not None:
                on_progress(LoadProgress(store_id, len(cached), len(cached)))
            return cached

        return await self._detailed_loads.dedupe(
            f"detailed:{store_id}",
            lambda: self._load_detailed(store_id, essential, on_progress),
        )

    def start_detailed_load(
        self,
        store_id: int,
        essential: Optional[Sequence[EssentialProduct]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "asyncio.Task":
        """Schedule the detailed load without waiting for it."""
        task = asyncio.ensure_future(self.load_detailed_in_background(store_id, essential, on_progress))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._log_failure(store_id, t))
        return task

    async def _load_detailed(
        self,
        store_id: int,
        essential: Optional[Sequence[EssentialProduct]],
        on_progress: Optional[ProgressCallback],
    ) -> Dict[int, ProductAvailability]:
        try:
            snapshot = await self.fetcher.fetch_store_snapshot(store_id)
        except FetchError:
            snapshot = self.fetcher.last_good_store_snapshot(store_id)
            if snapshot is None:
                raise
            logger.warning(
                f"Detailed load for store {store_id} is using a stale snapshot "
                f"fetched at {snapshot.fetched_at.isoformat()}"
            )

        products = list(snapshot.products)
        if essential:
            # Products already on screen are computed first
            rank = {p.id: i for i, p in enumerate(essential)}
            products.sort(key=lambda p: rank.get(p.id, len(rank)))

        total = len(products)
        results: Dict[int, ProductAvailability] = {}
        for start in range(0, total, self.chunk_size):
            for product in products[start:start + self.chunk_size]:
                results[product.id] = compute_availability(
                    product, snapshot, self.low_stock_threshold, self.direct_sale_quantity
                )
            if on_progress is not None:
                on_progress(LoadProgress(store_id, len(results), total))
            # Yield between chunks so large catalogs do not block the loop
            await asyncio.sleep(0)

        if total == 0 and on_progress is not None:
            on_progress(LoadProgress(store_id, 0, 0))

        if not snapshot.stale:
            # Never outlive the stock figures the results were computed from
            self.cache.set(
                store_id, CacheLayer.PRODUCTS, DETAILED_PRODUCTS_KEY, results,
                ttl=self.fetcher.remaining_ttl(store_id) or 0,
            )
        logger.debug(f"Detailed availability loaded for store {store_id}: {total} products")
        return results

    @staticmethod
    def _log_failure(store_id: int, task: "asyncio.Task") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background detailed load for store {store_id} failed: {error}")
