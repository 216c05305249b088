"""Cache routes."""

from fastapi import APIRouter, Request

from inventory_engine.api.deps import Engine
from inventory_engine.core.rate_limit import limiter

router = APIRouter()


@router.delete("")
@limiter.limit("10/minute")
async def clear_store_cache(request: Request, store_id: int, engine: Engine):
    """Drop everything cached for the store; the next read goes to the database."""
    removed = engine.clear_store_cache(store_id)
    return {"store_id": store_id, "entries_removed": removed}
