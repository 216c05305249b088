"""Deduction routes - ingredient stock deduction for committed sales."""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request

from inventory_engine.api.deps import Engine
from inventory_engine.core.rate_limit import limiter
from inventory_engine.schemas.deduction import DeductionRequest, DeductionResponse
from inventory_engine.services.stock_deduction_service import TransactionLineItem

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=DeductionResponse)
@limiter.limit("120/minute")
async def create_deduction(
    request: Request,
    store_id: int,
    body: DeductionRequest,
    engine: Engine,
    x_actor_id: Optional[str] = Header(default=None),
):
    """
    Deduct ingredient stock for a committed sale.

    Always answers 200 with the structured result. ``success=false`` means
    inventory may be inconsistent and should be reconciled manually.
    """
    line_items = [
        TransactionLineItem(
            name=item.name,
            quantity=item.quantity,
            product_id=item.product_id,
            unit_price=item.unit_price,
        )
        for item in body.items
    ]
    result = await engine.deductions.deduct(
        body.transaction_id,
        store_id,
        line_items,
        timeout=body.timeout_seconds,
        created_by=body.created_by or x_actor_id or "system",
    )
    if not result.success:
        logger.warning(
            f"Deduction for transaction {body.transaction_id} (store {store_id}) "
            f"needs reconciliation: {result.errors}"
        )
    return result.to_dict()
