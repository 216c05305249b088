"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request

from inventory_engine.services.container import InventoryEngine


def get_inventory_engine(request: Request) -> InventoryEngine:
    """The engine built by the application lifespan."""
    return request.app.state.inventory_engine


Engine = Annotated[InventoryEngine, Depends(get_inventory_engine)]
