"""
Cart aggregation: read the buyer's cart joined with the catalog and price it.

compute_quote() is pure; the remaining functions are the cart CRUD that other
screens share.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.config import get_settings
from farmtable.errors import CartLineNotFound
from farmtable.models import CartLine, Product
from farmtable.schemas import CartLineView, CatalogPrice, CheckoutQuote, QuoteResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pricing:
    """Fixed fees and the promo allow-list (code -> percent off the subtotal)."""
    delivery_fee: int
    service_fee: int
    promo_codes: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "Pricing":
        settings = get_settings()
        return cls(
            delivery_fee=settings.delivery_fee,
            service_fee=settings.service_fee,
            promo_codes=settings.promo_codes,
        )


def percent_of(amount: int, percent: int) -> int:
    value = Decimal(amount) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_quote(
    lines: Sequence[CartLineView],
    promo_code: Optional[str] = None,
    pricing: Optional[Pricing] = None,
) -> QuoteResult:
    """
    Price a set of cart lines.

    An unknown promo code is not an error: it yields discount 0 and
    promo_status="invalid" so the caller can show inline feedback.
    """
    pricing = pricing or Pricing.from_settings()
    subtotal = sum(line.price * line.quantity for line in lines)

    code = promo_code.strip() if promo_code else ""
    discount = 0
    if not code:
        promo_status = "none"
    elif code in pricing.promo_codes:
        promo_status = "applied"
        discount = min(max(percent_of(subtotal, pricing.promo_codes[code]), 0), subtotal)
    else:
        promo_status = "invalid"

    quote = CheckoutQuote(
        subtotal=subtotal,
        delivery_fee=pricing.delivery_fee,
        service_fee=pricing.service_fee,
        discount=discount,
        total=subtotal + pricing.delivery_fee + pricing.service_fee - discount,
    )
    return QuoteResult(
        quote=quote,
        promo_status=promo_status,
        promo_code=code if promo_status == "applied" else None,
    )


# ── Cart / catalog collaborators ─────────────────────────────────────────────

async def fetch_cart_lines(session: AsyncSession, buyer_id: str) -> List[CartLineView]:
    """Cart lines for a buyer, joined with catalog price/unit/vendor at read time."""
    rows = (
        await session.execute(
            select(CartLine, Product)
            .join(Product, Product.id == CartLine.product_id)
            .where(CartLine.buyer_id == buyer_id)
            .order_by(CartLine.created_at, CartLine.id)
        )
    ).all()
    return [
        CartLineView(
            id=line.id,
            product_id=product.id,
            quantity=line.quantity,
            name=product.name,
            price=product.price,
            unit=product.unit,
            vendor_id=product.vendor_id,
            vendor_name=product.vendor_name,
        )
        for line, product in rows
    ]


async def fetch_catalog_price(session: AsyncSession, product_id: str) -> Optional[CatalogPrice]:
    product = await session.get(Product, product_id)
    if product is None:
        return None
    return CatalogPrice(price=product.price, unit=product.unit, vendor_id=product.vendor_id)


async def _get_owned_line(session: AsyncSession, buyer_id: str, line_id: str) -> CartLine:
    line = await session.get(CartLine, line_id)
    if line is None or line.buyer_id != buyer_id:
        raise CartLineNotFound("That item is no longer in your cart.", line_id=line_id)
    return line


async def update_cart_line_quantity(
    session: AsyncSession, buyer_id: str, line_id: str, quantity: int
) -> Optional[CartLine]:
    """Set a line's quantity; zero or less removes the line. Returns None when removed."""
    line = await _get_owned_line(session, buyer_id, line_id)
    if quantity <= 0:
        await session.delete(line)
        await session.commit()
        return None
    line.quantity = quantity
    session.add(line)
    await session.commit()
    return line


async def delete_cart_line(session: AsyncSession, buyer_id: str, line_id: str) -> None:
    line = await _get_owned_line(session, buyer_id, line_id)
    await session.delete(line)
    await session.commit()


async def clear_cart(session: AsyncSession, buyer_id: str) -> int:
    """Delete every cart line belonging to the buyer. Caller commits."""
    result = await session.execute(delete(CartLine).where(CartLine.buyer_id == buyer_id))
    logger.info("Cleared %d cart line(s) for buyer=%s", result.rowcount, buyer_id)
    return result.rowcount
