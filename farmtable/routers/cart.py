"""
Cart endpoints.

GET    /cart               lines + quote (?promo_code=)
PATCH  /cart/{line_id}     change quantity (<= 0 removes)
DELETE /cart/{line_id}
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db
from farmtable.deps import get_buyer
from farmtable.schemas import BuyerContext, CartOut, CartQuantityUpdate
from farmtable.services.quote import (
    compute_quote,
    delete_cart_line,
    fetch_cart_lines,
    update_cart_line_quantity,
)

router = APIRouter(prefix="/cart", tags=["cart"])


async def _cart(db: AsyncSession, buyer: BuyerContext, promo_code: Optional[str]) -> CartOut:
    lines = await fetch_cart_lines(db, buyer.buyer_id)
    priced = compute_quote(lines, promo_code)
    return CartOut(
        lines=lines,
        quote=priced.quote,
        promo_status=priced.promo_status,
        promo_message={
            "applied": "Promo code applied successfully!",
            "invalid": "Invalid promo code",
        }.get(priced.promo_status),
    )


@router.get("", response_model=CartOut)
async def get_cart(
    promo_code: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> CartOut:
    return await _cart(db, buyer, promo_code)


@router.patch("/{line_id}", response_model=CartOut)
async def update_line(
    line_id: str,
    body: CartQuantityUpdate,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> CartOut:
    await update_cart_line_quantity(db, buyer.buyer_id, line_id, body.quantity)
    return await _cart(db, buyer, None)


@router.delete("/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_line(
    line_id: str,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> None:
    await delete_cart_line(db, buyer.buyer_id, line_id)
