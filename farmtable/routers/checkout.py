"""
Checkout endpoints.

POST /checkout                        start: quote + hosted payment URL
POST /checkout/{reference}/session    report how the hosted page ended
POST /checkout/{reference}/verify     verify payment and create orders (idempotent)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db
from farmtable.deps import get_buyer, payment_gateway
from farmtable.errors import CheckoutNotFound
from farmtable.models import CheckoutAttempt
from farmtable.schemas import (
    BuyerContext,
    CheckoutRequest,
    CheckoutStartOut,
    OrderOut,
    SessionOutcomeIn,
    SessionOutcomeOut,
)
from farmtable.services.checkout import (
    complete_checkout,
    order_out,
    start_checkout,
)
from farmtable.services.paystack import PaymentGateway, needs_verification_prompt

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutStartOut)
async def begin_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
    gateway: PaymentGateway = Depends(payment_gateway),
) -> CheckoutStartOut:
    return await start_checkout(db, buyer, gateway, body.payment_method, body.promo_code)


@router.post("/{reference}/session", response_model=SessionOutcomeOut)
async def hosted_session_ended(
    reference: str,
    body: SessionOutcomeIn,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
) -> SessionOutcomeOut:
    attempt = await db.get(CheckoutAttempt, reference)
    if attempt is None or attempt.buyer_id != buyer.buyer_id:
        raise CheckoutNotFound("We could not find that checkout.", reference=reference)

    if needs_verification_prompt(body.outcome):
        logger.info(
            "Hosted session %s reference=%s buyer=%s",
            body.outcome.value, reference, buyer.buyer_id,
        )
        return SessionOutcomeOut(
            reference=reference,
            offer_verification=True,
            message="Payment cancelled. Would you like to verify if payment was completed?",
        )
    return SessionOutcomeOut(
        reference=reference,
        offer_verification=False,
        message="Confirming your payment…",
    )


@router.post("/{reference}/verify", response_model=List[OrderOut])
async def verify_checkout(
    reference: str,
    db: AsyncSession = Depends(get_db),
    buyer: BuyerContext = Depends(get_buyer),
    gateway: PaymentGateway = Depends(payment_gateway),
) -> List[OrderOut]:
    orders = await complete_checkout(db, buyer, gateway, reference)
    return [order_out(o) for o in orders]
