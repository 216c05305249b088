"""Database access for the inventory engine.

Every method opens its own session from the factory so calls can run in
worker threads concurrently. Results are returned as frozen row objects,
never ORM instances, so they are safe to cache and share between requests.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from inventory_engine.models.inventory import (
    InventoryMovement,
    InventoryStock,
    InventorySyncResult,
    SyncStatus,
)
from inventory_engine.models.product import Product
from inventory_engine.models.recipe import Recipe, RecipeIngredient, RecipeTemplate
from inventory_engine.models.store import Category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductRow:
    id: int
    store_id: int
    name: str
    price: Decimal
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_available: bool = True
    display_order: int = 0
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    recipe_id: Optional[int] = None
    recipe_name: Optional[str] = None
    recipe_active: Optional[bool] = None


@dataclass(frozen=True)
class InventoryRow:
    id: int
    store_id: int
    item: str
    unit: str
    stock_quantity: Decimal
    is_active: bool = True
    version: int = 1


@dataclass(frozen=True)
class IngredientMappingRow:
    """A recipe ingredient as stored, before stock enrichment."""

    id: int
    recipe_id: int
    ingredient_name: str
    quantity: Decimal
    unit: str
    inventory_stock_id: Optional[int] = None
    position: int = 0


@dataclass(frozen=True)
class EssentialProductRow:
    id: int
    name: str
    price: Decimal
    image_url: Optional[str] = None
    category_name: Optional[str] = None
    is_available: bool = True


@dataclass(frozen=True)
class RecipeDefinition:
    """A store recipe or a global template, with its ingredient lines."""

    id: int
    name: str
    is_active: bool
    ingredients: List[IngredientMappingRow] = field(default_factory=list)
    is_template: bool = False


@dataclass(frozen=True)
class StockDeduction:
    inventory_stock_id: int
    quantity: Decimal


@dataclass
class StockWriteOutcome:
    inventory_stock_id: int
    success: bool
    previous_quantity: Optional[Decimal] = None
    new_quantity: Optional[Decimal] = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class MovementRecord:
    inventory_stock_id: int
    quantity_change: Decimal
    previous_quantity: Decimal
    new_quantity: Decimal
    reference_id: str
    movement_type: str = "sale"
    reference_type: str = "transaction"
    notes: Optional[str] = None
    created_by: Optional[str] = None


def _mapping_row(line: RecipeIngredient) -> IngredientMappingRow:
    return IngredientMappingRow(
        id=line.id,
        recipe_id=line.recipe_id,
        ingredient_name=line.ingredient_name,
        quantity=Decimal(line.quantity),
        unit=line.unit,
        inventory_stock_id=line.inventory_stock_id,
        position=line.position,
    )


def _recipe_definition(recipe: Recipe) -> RecipeDefinition:
    return RecipeDefinition(
        id=recipe.id,
        name=recipe.name,
        is_active=recipe.is_active,
        ingredients=[_mapping_row(line) for line in recipe.ingredients],
    )


class InventoryRepository:
    """Read and write access to catalog, recipe and stock tables."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # ===== READS =====

    def fetch_products(
        self, store_id: int, product_ids: Optional[Sequence[int]] = None
    ) -> List[ProductRow]:
        """Products with their category and recipe header, in one query."""
        with self._session() as db:
            query = (
                db.query(Product, Category.name, Recipe.name, Recipe.is_active)
                .outerjoin(Category, Product.category_id == Category.id)
                .outerjoin(Recipe, Product.recipe_id == Recipe.id)
                .filter(Product.store_id == store_id)
            )
            if product_ids is not None:
                query = query.filter(Product.id.in_(list(product_ids)))
            rows = query.order_by(Product.display_order, Product.id).all()

            return [
                ProductRow(
                    id=product.id,
                    store_id=product.store_id,
                    name=product.name,
                    price=Decimal(product.price or 0),
                    description=product.description,
                    image_url=product.image_url,
                    is_available=product.is_available,
                    display_order=product.display_order,
                    category_id=product.category_id,
                    category_name=category_name,
                    # A recipe id with no joined row is a dangling reference
                    recipe_id=product.recipe_id if recipe_name is not None else None,
                    recipe_name=recipe_name,
                    recipe_active=recipe_active,
                )
                for product, category_name, recipe_name, recipe_active in rows
            ]

    def fetch_inventory(self, store_id: int) -> List[InventoryRow]:
        """All inventory rows of a store, active or not."""
        with self._session() as db:
            stocks = (
                db.query(InventoryStock)
                .filter(InventoryStock.store_id == store_id)
                .order_by(InventoryStock.id)
                .all()
            )
            return [
                InventoryRow(
                    id=s.id,
                    store_id=s.store_id,
                    item=s.item,
                    unit=s.unit,
                    stock_quantity=Decimal(s.stock_quantity),
                    is_active=s.is_active,
                    version=s.version,
                )
                for s in stocks
            ]

    def fetch_recipe_ingredient_rows(
        self, store_id: int, recipe_ids: Iterable[int]
    ) -> List[IngredientMappingRow]:
        """Ingredient lines of the given recipes, restricted to the store's recipes."""
        ids = sorted(set(recipe_ids))
        if not ids:
            return []
        with self._session() as db:
            lines = (
                db.query(RecipeIngredient)
                .join(Recipe, RecipeIngredient.recipe_id == Recipe.id)
                .filter(Recipe.store_id == store_id, Recipe.id.in_(ids))
                .order_by(RecipeIngredient.recipe_id, RecipeIngredient.position, RecipeIngredient.id)
                .all()
            )
            return [_mapping_row(line) for line in lines]

    def fetch_essential_products(self, store_id: int) -> List[EssentialProductRow]:
        """Minimal product fields for the first render of a product grid."""
        with self._session() as db:
            rows = (
                db.query(
                    Product.id,
                    Product.name,
                    Product.price,
                    Product.image_url,
                    Product.is_available,
                    Category.name.label("category_name"),
                )
                .outerjoin(Category, Product.category_id == Category.id)
                .filter(Product.store_id == store_id)
                .order_by(Product.display_order, Product.id)
                .all()
            )
            return [
                EssentialProductRow(
                    id=row.id,
                    name=row.name,
                    price=Decimal(row.price or 0),
                    image_url=row.image_url,
                    category_name=row.category_name,
                    is_available=row.is_available,
                )
                for row in rows
            ]

    def fetch_catalog_recipes(
        self, store_id: int, product_ids: Iterable[int]
    ) -> Dict[int, RecipeDefinition]:
        """Recipes reachable through catalog entries, keyed by product id."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        with self._session() as db:
            links = (
                db.query(Product.id, Product.recipe_id)
                .filter(
                    Product.store_id == store_id,
                    Product.id.in_(ids),
                    Product.recipe_id.isnot(None),
                )
                .all()
            )
            recipe_ids = {recipe_id for _, recipe_id in links}
            if not recipe_ids:
                return {}
            recipes = (
                db.query(Recipe)
                .options(selectinload(Recipe.ingredients))
                .filter(Recipe.store_id == store_id, Recipe.id.in_(recipe_ids))
                .all()
            )
            by_id = {recipe.id: _recipe_definition(recipe) for recipe in recipes}
            return {
                product_id: by_id[recipe_id]
                for product_id, recipe_id in links
                if recipe_id in by_id
            }

    def fetch_store_recipes_by_names(
        self, store_id: int, names: Iterable[str]
    ) -> Dict[str, RecipeDefinition]:
        """Active store recipes whose name equals one of ``names`` (case-insensitive)."""
        lowered = sorted({n.strip().lower() for n in names if n and n.strip()})
        if not lowered:
            return {}
        with self._session() as db:
            recipes = (
                db.query(Recipe)
                .options(selectinload(Recipe.ingredients))
                .filter(
                    Recipe.store_id == store_id,
                    Recipe.is_active.is_(True),
                    func.lower(Recipe.name).in_(lowered),
                )
                .order_by(Recipe.id)
                .all()
            )
            found: Dict[str, RecipeDefinition] = {}
            for recipe in recipes:
                # Lowest id wins on duplicate names
                found.setdefault(recipe.name.strip().lower(), _recipe_definition(recipe))
            return found

    def fetch_templates_by_names(self, names: Iterable[str]) -> Dict[str, RecipeDefinition]:
        """Active recipe templates whose name equals one of ``names`` (case-insensitive)."""
        lowered = sorted({n.strip().lower() for n in names if n and n.strip()})
        if not lowered:
            return {}
        with self._session() as db:
            templates = (
                db.query(RecipeTemplate)
                .options(selectinload(RecipeTemplate.ingredients))
                .filter(
                    RecipeTemplate.is_active.is_(True),
                    func.lower(RecipeTemplate.name).in_(lowered),
                )
                .order_by(RecipeTemplate.id)
                .all()
            )
            found: Dict[str, RecipeDefinition] = {}
            for template in templates:
                found.setdefault(
                    template.name.strip().lower(),
                    RecipeDefinition(
                        id=template.id,
                        name=template.name,
                        is_active=template.is_active,
                        is_template=True,
                        ingredients=[
                            IngredientMappingRow(
                                id=line.id,
                                recipe_id=template.id,
                                ingredient_name=line.ingredient_name,
                                quantity=Decimal(line.quantity),
                                unit=line.unit,
                                position=index,
                            )
                            for index, line in enumerate(template.ingredients)
                        ],
                    ),
                )
            return found

    def find_completed_deduction(self, transaction_id: str, store_id: int) -> bool:
        """Whether a successful deduction was already recorded for this transaction."""
        with self._session() as db:
            row = (
                db.query(InventorySyncResult.id)
                .filter(
                    InventorySyncResult.transaction_id == transaction_id,
                    InventorySyncResult.store_id == store_id,
                    InventorySyncResult.status == SyncStatus.SUCCESS.value,
                )
                .first()
            )
            return row is not None

    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))

    # ===== WRITES =====

    def apply_stock_deductions(
        self, deductions: Sequence[StockDeduction], retries: int = 3
    ) -> List[StockWriteOutcome]:
        """Decrement each row, clamped at zero, with an optimistic version check.

        Rows are written in independent transactions. A failure on one row is
        reported in its outcome and does not stop the remaining rows.
        """
        return [self._apply_one(d, retries) for d in deductions]

    def _apply_one(self, deduction: StockDeduction, retries: int) -> StockWriteOutcome:
        outcome = StockWriteOutcome(inventory_stock_id=deduction.inventory_stock_id, success=False)
        with self._session() as db:
            try:
                while outcome.attempts <= retries:
                    outcome.attempts += 1
                    current = (
                        db.query(InventoryStock.stock_quantity, InventoryStock.version)
                        .filter(InventoryStock.id == deduction.inventory_stock_id)
                        .first()
                    )
                    if current is None:
                        db.rollback()
                        outcome.error = "inventory row not found"
                        return outcome

                    previous = Decimal(current.stock_quantity)
                    new_quantity = max(Decimal("0"), previous - deduction.quantity)
                    result = db.execute(
                        update(InventoryStock)
                        .where(
                            InventoryStock.id == deduction.inventory_stock_id,
                            InventoryStock.version == current.version,
                        )
                        .values(stock_quantity=new_quantity, version=current.version + 1)
                    )
                    if result.rowcount == 1:
                        db.commit()
                        outcome.success = True
                        outcome.previous_quantity = previous
                        outcome.new_quantity = new_quantity
                        return outcome

                    # Another writer got there first; re-read and retry
                    db.rollback()
                    logger.debug(
                        f"Version conflict on inventory row {deduction.inventory_stock_id}, "
                        f"attempt {outcome.attempts}"
                    )
                outcome.error = f"version conflict persisted after {outcome.attempts} attempts"
            except SQLAlchemyError as e:
                db.rollback()
                outcome.error = str(e)
                logger.error(
                    f"Stock update failed for inventory row {deduction.inventory_stock_id}: {e}"
                )
        return outcome

    def insert_movements(self, movements: Sequence[MovementRecord]) -> int:
        if not movements:
            return 0
        with self._session() as db:
            db.add_all(
                [
                    InventoryMovement(
                        inventory_stock_id=m.inventory_stock_id,
                        movement_type=m.movement_type,
                        quantity_change=m.quantity_change,
                        previous_quantity=m.previous_quantity,
                        new_quantity=m.new_quantity,
                        reference_type=m.reference_type,
                        reference_id=m.reference_id,
                        notes=m.notes,
                        created_by=m.created_by,
                    )
                    for m in movements
                ]
            )
            db.commit()
        return len(movements)

    def record_sync_result(
        self,
        transaction_id: str,
        store_id: int,
        status: SyncStatus,
        items_processed: int,
        duration_ms: float,
        error_details: Optional[str] = None,
        affected_items: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        with self._session() as db:
            record = InventorySyncResult(
                transaction_id=transaction_id,
                store_id=store_id,
                status=SyncStatus(status).value,
                items_processed=items_processed,
                duration_ms=duration_ms,
                error_details=error_details[:2000] if error_details else None,
                affected_items=affected_items,
            )
            db.add(record)
            db.commit()
            return record.id
