"""
Buyer order endpoints.

GET  /orders
GET  /orders/{order_id}
POST /orders/{order_id}/cancellation   step 1: reasons, refund methods, confirmation token
POST /orders/{order_id}/cancel         step 2: cancel with the collected choices
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db
from farmtable.deps import get_buyer
from farmtable.schemas import (
    BuyerContext,
    CancellationOutcome,
    CancellationPrompt,
    CancellationRequest,
    OrderOut,
)
from farmtable.services.cancellation import prepare_cancellation, request_cancellation
from farmtable.services.checkout import order_out
from farmtable.services.orders import get_order, list_orders

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("", response_model=List[OrderOut])
async def my_orders(
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> List[OrderOut]:
    return [order_out(o) for o in await list_orders(db, buyer.buyer_id)]


@router.get("/{order_id}", response_model=OrderOut)
async def order_detail(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> OrderOut:
    return order_out(await get_order(db, order_id, buyer.buyer_id))


@router.post("/{order_id}/cancellation", response_model=CancellationPrompt)
async def cancellation_prompt(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> CancellationPrompt:
    return await prepare_cancellation(db, buyer, order_id)


@router.post("/{order_id}/cancel", response_model=CancellationOutcome)
async def cancel(
    order_id: str,
    body: CancellationRequest,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> CancellationOutcome:
    return await request_cancellation(db, buyer, order_id, body)
