"""Stock Deduction Service - Deducts ingredient stock when a sale is committed.

Flow:
1. Skip transactions that already have a successful sync record
2. Fetch catalog recipes, store recipes by name, templates by name and the
   store's inventory (four concurrent queries)
3. For each line item resolve a recipe, first match wins:
   a. Recipe linked from the product's catalog entry
   b. Active store recipe whose name equals the sold item's name
   c. Active recipe template with the same name; each template ingredient is
      matched to an inventory row by IngredientMatcher
4. Sum the required quantity per inventory row across all line items
5. Write the totals in fixed-size chunks, concurrently, each row clamped at
   zero and version-checked
6. Log one movement per updated row and the sync record in the background,
   then invalidate the store's inventory-dependent cache layers

Unresolved items and ingredients are warnings: under-deducting is preferred
over blocking a sale. Failed row writes are errors and set success=False.
The whole sequence races a timeout; writes already issued are not rolled back.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from inventory_engine.core.cache import DETAILED_PRODUCTS_KEY, CacheLayer, StoreDataCache
from inventory_engine.models.inventory import MovementType, SyncStatus
from inventory_engine.services.exceptions import (
    AuditLogFailure,
    FetchError,
    ProcessingTimeout,
    ResolutionWarning,
    WriteError,
)
from inventory_engine.services.ingredient_matcher import IngredientMatcher
from inventory_engine.services.repository import (
    InventoryRepository,
    InventoryRow,
    MovementRecord,
    RecipeDefinition,
    StockDeduction,
    StockWriteOutcome,
)

logger = logging.getLogger(__name__)

# Layers holding data derived from stock levels
INVENTORY_DEPENDENT_LAYERS = (
    CacheLayer.INVENTORY,
    CacheLayer.BATCHED_DATA,
    CacheLayer.CART_VALIDATION,
)


@dataclass
class TransactionLineItem:
    name: str
    quantity: Decimal
    product_id: Optional[int] = None
    unit_price: Optional[Decimal] = None


@dataclass
class DeductedItem:
    inventory_stock_id: int
    item_name: str
    unit: str
    requested_quantity: Decimal
    quantity_deducted: Decimal
    previous_quantity: Decimal
    new_quantity: Decimal
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inventory_stock_id": self.inventory_stock_id,
            "item_name": self.item_name,
            "unit": self.unit,
            "requested_quantity": float(self.requested_quantity),
            "quantity_deducted": float(self.quantity_deducted),
            "previous_quantity": float(self.previous_quantity),
            "new_quantity": float(self.new_quantity),
            "sources": list(self.sources),
        }


@dataclass
class DeductionResult:
    transaction_id: str
    success: bool = True
    deducted_items: List[DeductedItem] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    processing_time_ms: float = 0.0
    items_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "success": self.success,
            "deducted_items": [d.to_dict() for d in self.deducted_items],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "processing_time_ms": round(self.processing_time_ms, 2),
            "items_processed": self.items_processed,
        }


@dataclass
class _PlannedRow:
    row: InventoryRow
    quantity: Decimal = Decimal("0")
    sources: List[str] = field(default_factory=list)

    def add(self, amount: Decimal, source: str) -> None:
        self.quantity += amount
        if source not in self.sources:
            self.sources.append(source)


class StockDeductionService:
    """Deducts recipe ingredients from inventory for committed sales."""

    def __init__(
        self,
        repository: InventoryRepository,
        matcher: IngredientMatcher,
        cache: Optional[StoreDataCache] = None,
        chunk_size: int = 50,
        write_retries: int = 3,
        default_timeout: float = 30.0,
    ):
        self.repository = repository
        self.matcher = matcher
        self.cache = cache
        self.chunk_size = chunk_size
        self.write_retries = write_retries
        self.default_timeout = default_timeout
        self._background: Set["asyncio.Task"] = set()

    # ===== CORE: TRANSACTION DEDUCTION =====

    async def deduct(
        self,
        transaction_id: str,
        store_id: int,
        line_items: Sequence[TransactionLineItem],
        timeout: Optional[float] = None,
        created_by: str = "system",
    ) -> DeductionResult:
        """
        Deduct ingredient stock for every line item of a transaction.

        Args:
            transaction_id: Sale reference, also the idempotency key
            store_id: Store whose inventory is decremented
            line_items: Sold items with product id (optional), name and quantity
            timeout: Deadline in seconds, defaults to the configured timeout
            created_by: Actor recorded on the movement rows

        Returns:
            DeductionResult. On timeout, a copy of the progress so far with
            success=False; the remaining work keeps running.
        """
        timeout = self.default_timeout if timeout is None else timeout
        started = time.perf_counter()
        result = DeductionResult(transaction_id=transaction_id)
        logger.info(
            f"Starting deduction for transaction {transaction_id} "
            f"(store {store_id}, {len(line_items)} line items)"
        )

        task = asyncio.ensure_future(
            self._run(transaction_id, store_id, list(line_items), created_by, result, started)
        )
        try:
            # Shield so the deadline stops the wait, not the writes
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            self._track(task)
            partial = copy.deepcopy(result)
            partial.success = False
            partial.errors.append({"error": str(ProcessingTimeout(transaction_id, timeout)), "type": "timeout"})
            partial.processing_time_ms = (time.perf_counter() - started) * 1000
            logger.error(
                f"Deduction for transaction {transaction_id} timed out after {timeout:g}s; "
                "writes already issued will still complete"
            )
            self._spawn(
                self._record_sync(
                    transaction_id, store_id, SyncStatus.TIMEOUT, partial, started
                )
            )
            return partial

        return result

    async def wait_for_background(self) -> None:
        """Wait for pending movement / sync-record writes and timed-out runs."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run(
        self,
        transaction_id: str,
        store_id: int,
        line_items: List[TransactionLineItem],
        created_by: str,
        result: DeductionResult,
        started: float,
    ) -> DeductionResult:
        try:
            if await self._already_processed(transaction_id, store_id):
                result.warnings.append(
                    {"warning": f"Transaction {transaction_id} already processed", "type": "duplicate"}
                )
                logger.info(f"Transaction {transaction_id} already processed; skipping deduction")
                return self._finish(result, started)

            items = self._valid_line_items(line_items, result)
            if not items:
                return self._finish(result, started)

            catalog, store_recipes, templates, inventory = await self._fetch_inputs(store_id, items)
            planned = self._plan(items, catalog, store_recipes, templates, inventory, result)

            rows = list(planned.values())
            chunks = [rows[i:i + self.chunk_size] for i in range(0, len(rows), self.chunk_size)]
            await asyncio.gather(*(self._write_chunk(chunk, result) for chunk in chunks))

        except FetchError as e:
            result.success = False
            result.errors.append({"error": str(e), "type": "fetch"})
            logger.error(f"Deduction for transaction {transaction_id} aborted: {e}")
        except Exception as e:
            result.success = False
            result.errors.append({"error": f"Deduction failed: {e}", "type": "internal"})
            logger.error(f"Deduction for transaction {transaction_id} failed: {e}", exc_info=True)

        if result.deducted_items:
            self._spawn(self._log_movements(transaction_id, created_by, list(result.deducted_items)))
            self._invalidate_store_cache(store_id)

        status = SyncStatus.SUCCESS if result.success else SyncStatus.FAILED
        self._finish(result, started)
        self._spawn(self._record_sync(transaction_id, store_id, status, result, started))
        logger.info(
            f"Deduction for transaction {transaction_id} finished: success={result.success}, "
            f"{len(result.deducted_items)} rows updated, {len(result.errors)} errors, "
            f"{len(result.warnings)} warnings in {result.processing_time_ms:.1f}ms"
        )
        return result

    # ===== FETCH =====

    async def _already_processed(self, transaction_id: str, store_id: int) -> bool:
        try:
            return await asyncio.to_thread(
                self.repository.find_completed_deduction, transaction_id, store_id
            )
        except Exception as e:
            raise FetchError("deduction history", store_id, e) from e

    async def _fetch_inputs(
        self, store_id: int, items: List[TransactionLineItem]
    ) -> Tuple[Dict[int, RecipeDefinition], Dict[str, RecipeDefinition], Dict[str, RecipeDefinition], List[InventoryRow]]:
        product_ids = [i.product_id for i in items if i.product_id is not None]
        names = [i.name for i in items]
        try:
            return await asyncio.gather(
                asyncio.to_thread(self.repository.fetch_catalog_recipes, store_id, product_ids),
                asyncio.to_thread(self.repository.fetch_store_recipes_by_names, store_id, names),
                asyncio.to_thread(self.repository.fetch_templates_by_names, names),
                asyncio.to_thread(self.repository.fetch_inventory, store_id),
            )
        except Exception as e:
            raise FetchError("deduction inputs", store_id, e) from e

    # ===== RESOLVE + AGGREGATE =====

    def _valid_line_items(
        self, line_items: List[TransactionLineItem], result: DeductionResult
    ) -> List[TransactionLineItem]:
        valid = []
        for item in line_items:
            quantity = Decimal(str(item.quantity))
            if quantity <= 0:
                result.warnings.append(
                    {
                        "warning": f"Skipped '{item.name}': quantity {quantity} is not positive",
                        "type": "invalid_quantity",
                        "item": item.name,
                    }
                )
                continue
            valid.append(
                TransactionLineItem(
                    name=item.name,
                    quantity=quantity,
                    product_id=item.product_id,
                    unit_price=item.unit_price,
                )
            )
        return valid

    def _resolve_recipe(
        self,
        item: TransactionLineItem,
        catalog: Dict[int, RecipeDefinition],
        store_recipes: Dict[str, RecipeDefinition],
        templates: Dict[str, RecipeDefinition],
    ) -> Optional[RecipeDefinition]:
        if item.product_id is not None and item.product_id in catalog:
            return catalog[item.product_id]
        key = item.name.strip().lower()
        if key in store_recipes:
            logger.info(f"Recipe for '{item.name}' found by name match")
            return store_recipes[key]
        if key in templates:
            logger.info(f"Recipe for '{item.name}' taken from template '{templates[key].name}'")
            return templates[key]
        return None

    def _plan(
        self,
        items: List[TransactionLineItem],
        catalog: Dict[int, RecipeDefinition],
        store_recipes: Dict[str, RecipeDefinition],
        templates: Dict[str, RecipeDefinition],
        inventory: List[InventoryRow],
        result: DeductionResult,
    ) -> Dict[int, _PlannedRow]:
        """Total required quantity per inventory row across the whole transaction."""
        by_id = {row.id: row for row in inventory}
        active = [row for row in inventory if row.is_active]
        planned: Dict[int, _PlannedRow] = {}

        for item in items:
            recipe = self._resolve_recipe(item, catalog, store_recipes, templates)
            if recipe is None:
                self._warn(result, ResolutionWarning(item.name, "no recipe found; stock not deducted"), item.name)
                continue
            if not recipe.is_active:
                result.warnings.append(
                    {
                        "warning": f"Recipe '{recipe.name}' is inactive; deducting anyway",
                        "type": "inactive_recipe",
                        "item": item.name,
                    }
                )

            resolved_any = False
            for ingredient in recipe.ingredients:
                if ingredient.quantity <= 0:
                    continue
                row = self._resolve_row(ingredient.ingredient_name, ingredient.inventory_stock_id,
                                        recipe, by_id, active, item, result)
                if row is None:
                    continue
                entry = planned.setdefault(row.id, _PlannedRow(row=row))
                entry.add(ingredient.quantity * item.quantity, item.name)
                resolved_any = True

            if resolved_any:
                result.items_processed += 1
            else:
                self._warn(result, ResolutionWarning(item.name, "no ingredients could be resolved"), item.name)

        return planned

    def _resolve_row(
        self,
        ingredient_name: str,
        inventory_stock_id: Optional[int],
        recipe: RecipeDefinition,
        by_id: Dict[int, InventoryRow],
        active: List[InventoryRow],
        item: TransactionLineItem,
        result: DeductionResult,
    ) -> Optional[InventoryRow]:
        if not recipe.is_template:
            row = by_id.get(inventory_stock_id) if inventory_stock_id is not None else None
            if row is None:
                self._warn(result, ResolutionWarning(
                    f"{item.name} / {ingredient_name}", "ingredient is not mapped to inventory"), item.name)
                return None
            if not row.is_active:
                self._warn(result, ResolutionWarning(
                    f"{item.name} / {ingredient_name}", f"inventory item '{row.item}' is inactive"), item.name)
                return None
            return row

        match = self.matcher.match(ingredient_name, active)
        if match is None:
            self._warn(result, ResolutionWarning(
                f"{item.name} / {ingredient_name}", "no matching inventory item"), item.name)
            return None
        if match.is_fuzzy:
            result.warnings.append(
                {"warning": match.describe(ingredient_name), "type": "fuzzy_match", "item": item.name}
            )
        return match.item

    @staticmethod
    def _warn(result: DeductionResult, warning: ResolutionWarning, item_name: str) -> None:
        logger.warning(f"Skipped during deduction: {warning}")
        result.warnings.append({"warning": str(warning), "type": "resolution", "item": item_name})

    # ===== APPLY =====

    async def _write_chunk(self, chunk: List[_PlannedRow], result: DeductionResult) -> None:
        deductions = [StockDeduction(inventory_stock_id=p.row.id, quantity=p.quantity) for p in chunk]
        try:
            outcomes = await asyncio.to_thread(
                self.repository.apply_stock_deductions, deductions, self.write_retries
            )
        except Exception as e:
            logger.error(f"Stock update chunk of {len(chunk)} rows failed: {e}")
            outcomes = [
                StockWriteOutcome(inventory_stock_id=d.inventory_stock_id, success=False, error=str(e))
                for d in deductions
            ]

        planned_by_id = {p.row.id: p for p in chunk}
        for outcome in outcomes:
            planned = planned_by_id[outcome.inventory_stock_id]
            if not outcome.success:
                error = WriteError(outcome.inventory_stock_id, outcome.error or "unknown error")
                logger.error(str(error))
                result.success = False
                result.errors.append(
                    {"error": str(error), "type": "write", "inventory_stock_id": outcome.inventory_stock_id}
                )
                continue

            deducted = outcome.previous_quantity - outcome.new_quantity
            if deducted < planned.quantity:
                result.warnings.append(
                    {
                        "warning": f"Stock for '{planned.row.item}' clamped at zero: needed "
                        f"{planned.quantity}, had {outcome.previous_quantity}",
                        "type": "clamped",
                    }
                )
            result.deducted_items.append(
                DeductedItem(
                    inventory_stock_id=outcome.inventory_stock_id,
                    item_name=planned.row.item,
                    unit=planned.row.unit,
                    requested_quantity=planned.quantity,
                    quantity_deducted=deducted,
                    previous_quantity=outcome.previous_quantity,
                    new_quantity=outcome.new_quantity,
                    sources=list(planned.sources),
                )
            )

    # ===== BACKGROUND AUDIT =====

    def _spawn(self, coro) -> None:
        self._track(asyncio.ensure_future(coro))

    def _track(self, task: "asyncio.Task") -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _log_movements(
        self, transaction_id: str, created_by: str, deducted: List[DeductedItem]
    ) -> None:
        movements = [
            MovementRecord(
                inventory_stock_id=d.inventory_stock_id,
                movement_type=MovementType.SALE.value,
                quantity_change=d.new_quantity - d.previous_quantity,
                previous_quantity=d.previous_quantity,
                new_quantity=d.new_quantity,
                reference_id=transaction_id,
                notes=f"Sale deduction: {', '.join(d.sources)}",
                created_by=created_by,
            )
            for d in deducted
        ]
        try:
            await asyncio.to_thread(self.repository.insert_movements, movements)
        except Exception as e:
            failure = AuditLogFailure(f"Movement logging failed for transaction {transaction_id}: {e}")
            logger.warning(str(failure))

    async def _record_sync(
        self,
        transaction_id: str,
        store_id: int,
        status: SyncStatus,
        result: DeductionResult,
        started: float,
    ) -> None:
        error_details = "; ".join(e.get("error", "") for e in result.errors) or None
        try:
            await asyncio.to_thread(
                self.repository.record_sync_result,
                transaction_id,
                store_id,
                status,
                result.items_processed,
                (time.perf_counter() - started) * 1000,
                error_details,
                [d.to_dict() for d in result.deducted_items],
            )
        except Exception as e:
            failure = AuditLogFailure(f"Sync result logging failed for transaction {transaction_id}: {e}")
            logger.warning(str(failure))

    def _invalidate_store_cache(self, store_id: int) -> None:
        if self.cache is None:
            return
        for layer in INVENTORY_DEPENDENT_LAYERS:
            self.cache.invalidate_layer(store_id, layer)
        self.cache.delete(store_id, CacheLayer.PRODUCTS, DETAILED_PRODUCTS_KEY)

    @staticmethod
    def _finish(result: DeductionResult, started: float) -> DeductionResult:
        result.processing_time_ms = (time.perf_counter() - started) * 1000
        return result
