"""Product routes - essential grid data and detailed availability."""

import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from inventory_engine.api.deps import Engine
from inventory_engine.core.rate_limit import limiter
from inventory_engine.schemas.availability import DetailedProductsResponse, EssentialProductResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/essential", response_model=list[EssentialProductResponse])
@limiter.limit("60/minute")
async def get_essential_products(request: Request, store_id: int, engine: Engine):
    """Minimal product fields, served from one lightweight query."""
    return await engine.loader.load_essential(store_id)


@router.get("/detailed", response_model=DetailedProductsResponse)
@limiter.limit("60/minute")
async def get_detailed_products(
    request: Request,
    store_id: int,
    engine: Engine,
    wait: bool = Query(True, description="Return 202 and load in the background when false"),
):
    """Availability for every product. Concurrent requests share one computation."""
    if not wait:
        engine.loader.start_detailed_load(store_id)
        return JSONResponse(status_code=202, content={"store_id": store_id, "status": "loading"})

    results = await engine.loader.load_detailed_in_background(store_id)
    return {
        "store_id": store_id,
        "total": len(results),
        "products": [r.to_dict() for r in results.values()],
    }
