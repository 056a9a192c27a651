"""
Checkout attempt orchestration: quote -> durable attempt -> payment session -> orders.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.config import get_settings
from farmtable.errors import CheckoutNotFound, EmptyCart
from farmtable.models import CheckoutAttempt, Order
from farmtable.schemas import (
    BuyerContext,
    CheckoutResult,
    CheckoutStartOut,
    OrderOut,
    PaymentIntent,
)
from farmtable.services.materializer import materialize
from farmtable.services.orders import progress_steps
from farmtable.services.paystack import (
    HostedSessionLauncher,
    PaymentGateway,
    generate_reference,
    needs_verification_prompt,
)
from farmtable.services.quote import Pricing, compute_quote, fetch_cart_lines
from farmtable.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_METHOD_LABELS = {"card": "Card", "bank_transfer": "Bank Transfer"}


def pay_label(total: int, payment_method: str, currency: str = "NGN") -> str:
    """Text of the checkout button, e.g. "Pay NGN 22.50 via Card"."""
    return f"Pay {currency} {total / 100:,.2f} via {_METHOD_LABELS.get(payment_method, payment_method)}"


def order_out(order: Order) -> OrderOut:
    out = OrderOut.model_validate(order)
    out.progress = progress_steps(order.status)
    return out


async def start_checkout(
    session: AsyncSession,
    buyer: BuyerContext,
    gateway: PaymentGateway,
    payment_method: str,
    promo_code: Optional[str] = None,
    pricing: Optional[Pricing] = None,
    policy: Optional[RetryPolicy] = None,
) -> CheckoutStartOut:
    """
    Price the cart, persist the checkout attempt, then open a payment session.
    A gateway failure leaves the cart untouched and moves no money.
    """
    policy = policy or RetryPolicy.from_settings()

    lines = await fetch_cart_lines(session, buyer.buyer_id)
    if not lines:
        raise EmptyCart("Your cart is empty.")

    priced = compute_quote(lines, promo_code, pricing)
    quote = priced.quote
    reference = generate_reference(buyer.buyer_id)

    metadata = {
        "user_id": buyer.buyer_id,
        "order_type": "product_purchase",
        "items": [
            {
                "product_id": l.product_id,
                "product_name": l.name,
                "quantity": l.quantity,
                "price": l.price,
                "vendor_id": l.vendor_id,
                "vendor_name": l.vendor_name,
            }
            for l in lines
        ],
        **quote.model_dump(),
        "promo_code": priced.promo_code,
    }

    # Durable before the gateway sees the reference
    session.add(
        CheckoutAttempt(
            reference=reference,
            buyer_id=buyer.buyer_id,
            buyer_email=buyer.email,
            payment_method=payment_method,
            amount=quote.total,
            quote=quote.model_dump(),
            lines=[l.model_dump() for l in lines],
            promo_code=priced.promo_code,
            status="initialized",
        )
    )
    await session.commit()
    logger.info(
        "Checkout attempt %s created buyer=%s total=%d lines=%d",
        reference, buyer.buyer_id, quote.total, len(lines),
    )

    intent = PaymentIntent(
        reference=reference,
        amount=quote.total,
        channel=payment_method,
        metadata=metadata,
    )
    # A repeated initialize with the same reference is refused as a duplicate
    initialized = await policy.once().run(
        gateway.initialize, intent, buyer.email,
        description=f"initialize reference={reference}",
    )
    return CheckoutStartOut(
        reference=reference,
        authorization_url=initialized.authorization_url,
        quote=quote,
        promo_status=priced.promo_status,
        pay_label=pay_label(quote.total, payment_method, get_settings().currency),
    )


async def complete_checkout(
    session: AsyncSession,
    buyer: BuyerContext,
    gateway: PaymentGateway,
    reference: str,
    policy: Optional[RetryPolicy] = None,
) -> List[Order]:
    """Verify and materialize; safe to call again with the same reference."""
    attempt = await session.get(CheckoutAttempt, reference)
    if attempt is None or attempt.buyer_id != buyer.buyer_id:
        raise CheckoutNotFound("We could not find that checkout.", reference=reference)
    return await materialize(session, gateway, reference, policy)


async def run_checkout(
    session: AsyncSession,
    buyer: BuyerContext,
    gateway: PaymentGateway,
    launcher: HostedSessionLauncher,
    payment_method: str,
    promo_code: Optional[str] = None,
    pricing: Optional[Pricing] = None,
    policy: Optional[RetryPolicy] = None,
) -> CheckoutResult:
    """
    The whole flow for an in-process caller. If the buyer cancels or dismisses
    the hosted page, nothing is assumed: the result offers verification with
    the same reference.
    """
    started = await start_checkout(
        session, buyer, gateway, payment_method, promo_code, pricing, policy
    )
    outcome = await launcher(started.authorization_url)
    if needs_verification_prompt(outcome):
        logger.info(
            "Hosted session %s for reference=%s; offering verification",
            outcome.value, started.reference,
        )
        return CheckoutResult(status="verification_offered", reference=started.reference)

    orders = await complete_checkout(session, buyer, gateway, started.reference, policy)
    return CheckoutResult(
        status="materialized",
        reference=started.reference,
        orders=[order_out(o) for o in orders],
    )
