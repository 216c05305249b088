"""Pytest configuration and fixtures."""

from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from inventory_engine.core.cache import StoreDataCache
from inventory_engine.core.config import Settings
from inventory_engine.db.base import Base
from inventory_engine.db.session import build_engine, build_session_factory
# Import all models to ensure they're registered with Base.metadata
from inventory_engine.models import (
    Category,
    InventoryStock,
    Product,
    Recipe,
    RecipeIngredient,
    RecipeTemplate,
    RecipeTemplateIngredient,
    Store,
)
from inventory_engine.services.container import build_inventory_engine
from inventory_engine.services.repository import InventoryRepository


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """File-backed SQLite so worker threads get their own connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'inventory_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(session_factory) -> InventoryRepository:
    return InventoryRepository(session_factory)


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> StoreDataCache:
    return StoreDataCache()


@pytest.fixture
def clocked_cache(clock) -> StoreDataCache:
    """Cache whose TTLs run on the fake clock."""
    return StoreDataCache(clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        redis_url=None,
        rate_limit_enabled=False,
        invalidation_debounce_ms=50,
        deduction_timeout_seconds=10,
    )


@pytest.fixture
def inventory(test_settings, session_factory):
    """A fully wired engine on the test database."""
    return build_inventory_engine(test_settings, session_factory)


@pytest.fixture
def client(inventory) -> Generator[TestClient, None, None]:
    """Test client whose lifespan uses the test engine."""
    from inventory_engine.core.rate_limit import limiter
    from inventory_engine.main import create_app

    # Disable rate limiting during tests to avoid flaky failures
    limiter.enabled = False
    with TestClient(create_app(lambda: inventory), raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True


@pytest.fixture
def latte_store(db_session: Session) -> dict:
    """A coffee shop with a recipe product, a direct-sale product and a template.

    Latte: Coffee Beans 18 g (stock 200 g) and Milk 150 ml (stock 900 ml),
    so 6 can be made. A second store holds its own Coffee Beans row.
    """
    store = Store(name="Main Street")
    other_store = Store(name="Harbor Front")
    db_session.add_all([store, other_store])
    db_session.flush()

    coffee = Category(store_id=store.id, name="Coffee")
    snacks = Category(store_id=store.id, name="Snacks")
    db_session.add_all([coffee, snacks])
    db_session.flush()

    beans = InventoryStock(store_id=store.id, item="Coffee Beans", unit="g", stock_quantity=Decimal("200"))
    milk = InventoryStock(store_id=store.id, item="Milk", unit="ml", stock_quantity=Decimal("900"))
    croissant = InventoryStock(store_id=store.id, item="Croissant", unit="pcs", stock_quantity=Decimal("40"))
    nutella = InventoryStock(store_id=store.id, item="Nutella Sauce", unit="g", stock_quantity=Decimal("500"))
    other_beans = InventoryStock(
        store_id=other_store.id, item="Coffee Beans", unit="g", stock_quantity=Decimal("1000")
    )
    db_session.add_all([beans, milk, croissant, nutella, other_beans])
    db_session.flush()

    latte_recipe = Recipe(store_id=store.id, name="Latte")
    db_session.add(latte_recipe)
    db_session.flush()
    db_session.add_all([
        RecipeIngredient(
            recipe_id=latte_recipe.id, ingredient_name="Coffee Beans", quantity=Decimal("18"),
            unit="g", inventory_stock_id=beans.id, position=0,
        ),
        RecipeIngredient(
            recipe_id=latte_recipe.id, ingredient_name="Milk", quantity=Decimal("150"),
            unit="ml", inventory_stock_id=milk.id, position=1,
        ),
    ])

    latte = Product(
        store_id=store.id, name="Latte", price=Decimal("4.50"), category_id=coffee.id,
        recipe_id=latte_recipe.id, display_order=1,
    )
    water = Product(
        store_id=store.id, name="Bottled Water", price=Decimal("1.50"), category_id=snacks.id,
        display_order=2,
    )
    db_session.add_all([latte, water])

    template = RecipeTemplate(name="Nutella Croffle")
    db_session.add(template)
    db_session.flush()
    db_session.add_all([
        RecipeTemplateIngredient(template_id=template.id, ingredient_name="Croissant", quantity=Decimal("1"), unit="pcs"),
        RecipeTemplateIngredient(
            template_id=template.id, ingredient_name="Nutella Topping", quantity=Decimal("20"), unit="g"
        ),
    ])
    db_session.commit()

    return {
        "store": store,
        "other_store": other_store,
        "coffee": coffee,
        "beans": beans,
        "milk": milk,
        "croissant": croissant,
        "nutella": nutella,
        "other_beans": other_beans,
        "latte_recipe": latte_recipe,
        "latte": latte,
        "water": water,
        "template": template,
        "db": db_session,
    }
