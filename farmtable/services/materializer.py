"""
Order materialization: turn a verified payment + cart snapshot into one order per vendor.

Re-entrant against the checkout attempt record:
  - orders are unique on (payment_reference, vendor_id), so a re-run skips
    vendors that already have an order;
  - the cart is cleared only after every vendor order exists;
  - a failed fan-out is persisted to materialization_failures and the attempt is
    flagged reconciliation_needed before the error reaches the buyer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.errors import (
    CheckoutNotFound,
    PartialMaterializationFailure,
    PaymentNotConfirmed,
)
from farmtable.models import CheckoutAttempt, MaterializationFailure, Order
from farmtable.schemas import CartLineView, CheckoutQuote, LineItemSnapshot
from farmtable.services.orders import orders_for_reference
from farmtable.services.paystack import PaymentGateway
from farmtable.services.quote import clear_cart
from farmtable.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VendorShare:
    subtotal: int
    delivery_fee: int
    service_fee: int
    discount: int


def partition_by_vendor(lines: Sequence[CartLineView]) -> Dict[str, List[CartLineView]]:
    """Group lines by vendor; line order inside a group follows the cart."""
    groups: Dict[str, List[CartLineView]] = {}
    for line in lines:
        groups.setdefault(line.vendor_id, []).append(line)
    return groups


def apportion(amount: int, weights: Mapping[str, int]) -> Dict[str, int]:
    """
    Split *amount* across keys pro-rata by weight using largest remainders,
    so the parts always add back up to *amount* exactly.
    Ties go to the key that appears first. All-zero weights split evenly.
    """
    keys = list(weights)
    if not keys:
        return {}
    total_weight = sum(weights.values())
    if total_weight <= 0:
        weights = {k: 1 for k in keys}
        total_weight = len(keys)

    shares = {k: amount * weights[k] // total_weight for k in keys}
    leftover = amount - sum(shares.values())
    order = sorted(
        range(len(keys)),
        key=lambda i: (-(amount * weights[keys[i]] % total_weight), i),
    )
    for i in order[:leftover]:
        shares[keys[i]] += 1
    return shares


def apportion_checkout(
    quote: CheckoutQuote, groups: Mapping[str, Sequence[CartLineView]]
) -> Dict[str, VendorShare]:
    subtotals = {vendor_id: sum(l.line_total for l in lines) for vendor_id, lines in groups.items()}
    delivery = apportion(quote.delivery_fee, subtotals)
    service = apportion(quote.service_fee, subtotals)
    discount = apportion(quote.discount, subtotals)
    return {
        vendor_id: VendorShare(
            subtotal=subtotals[vendor_id],
            delivery_fee=delivery[vendor_id],
            service_fee=service[vendor_id],
            discount=discount[vendor_id],
        )
        for vendor_id in groups
    }


async def _record_failure(
    session: AsyncSession,
    reference: str,
    buyer_id: str,
    step: str,
    payload: dict,
    error: str,
) -> None:
    now = datetime.now(timezone.utc)
    existing = (
        await session.execute(
            select(MaterializationFailure).where(
                MaterializationFailure.reference == reference,
                MaterializationFailure.step == step,
            )
        )
    ).scalar_one_or_none()

    if existing:
        existing.error = error
        existing.payload = payload
        existing.attempts += 1
        existing.last_tried = now
        session.add(existing)
    else:
        session.add(
            MaterializationFailure(
                reference=reference,
                buyer_id=buyer_id,
                step=step,
                payload=payload,
                error=error,
                attempts=1,
                created_at=now,
                last_tried=now,
            )
        )


async def _insert_order(session: AsyncSession, order: Order) -> None:
    session.add(order)
    await session.commit()


async def _order_exists(session: AsyncSession, reference: str, vendor_id: str) -> bool:
    row = (
        await session.execute(
            select(Order.id).where(
                Order.payment_reference == reference,
                Order.vendor_id == vendor_id,
            )
        )
    ).scalar_one_or_none()
    return row is not None


def _build_order(
    attempt: CheckoutAttempt,
    vendor_id: str,
    lines: Sequence[CartLineView],
    share: VendorShare,
) -> Order:
    return Order(
        buyer_id=attempt.buyer_id,
        vendor_id=vendor_id,
        vendor_name=lines[0].vendor_name,
        line_items=[
            LineItemSnapshot(
                product_id=l.product_id,
                name=l.name,
                price=l.price,
                quantity=l.quantity,
                unit=l.unit,
            ).model_dump()
            for l in lines
        ],
        total=share.subtotal,
        delivery_fee_share=share.delivery_fee,
        service_fee_share=share.service_fee,
        discount_share=share.discount,
        payment_reference=attempt.reference,
        payment_method=attempt.payment_method,
        payment_status="paid",
        status="pending",
    )


async def materialize(
    session: AsyncSession,
    gateway: PaymentGateway,
    reference: str,
    policy: Optional[RetryPolicy] = None,
) -> List[Order]:
    """
    Verify the payment for *reference* and write one order per vendor in the
    attempt's cart snapshot, then clear the buyer's cart.

    Raises PaymentNotConfirmed (nothing written) or PartialMaterializationFailure
    (payment captured, failure persisted for reconciliation).
    """
    policy = policy or RetryPolicy.from_settings()

    attempt = await session.get(CheckoutAttempt, reference)
    if attempt is None:
        raise CheckoutNotFound("We could not find that checkout.", reference=reference)

    if attempt.status == "materialized":
        logger.info("Checkout %s already materialized – returning existing orders", reference)
        return await orders_for_reference(session, reference)

    buyer_id = attempt.buyer_id

    # ── 1. Payment must be verified before any order insert ──────────────────
    verification = await policy.run(
        gateway.verify, reference, description=f"verify reference={reference}"
    )
    attempt.gateway_status = verification.status
    if not verification.succeeded:
        await session.commit()
        logger.info(
            "Payment not confirmed reference=%s buyer=%s gateway_status=%s",
            reference, buyer_id, verification.status,
        )
        raise PaymentNotConfirmed(reference, verification.status)

    attempt.amount_paid = verification.amount_paid
    if verification.amount_paid < attempt.amount:
        attempt.status = "reconciliation_needed"
        await _record_failure(
            session, reference, buyer_id, "verify",
            {"expected": attempt.amount, "paid": verification.amount_paid},
            "amount paid is below the checkout total",
        )
        await session.commit()
        logger.error(
            "Underpayment reference=%s buyer=%s expected=%d paid=%d",
            reference, buyer_id, attempt.amount, verification.amount_paid,
        )
        raise PaymentNotConfirmed(
            reference,
            verification.status,
            message="The amount paid does not match your order total. "
            "Our support team will follow up.",
        )

    attempt.status = "verified"
    await session.commit()

    # ── 2. Fan out one order per vendor ──────────────────────────────────────
    attempt.status = "materializing"
    await session.commit()

    lines = [CartLineView(**raw) for raw in attempt.lines]
    quote = CheckoutQuote(**attempt.quote)
    groups = partition_by_vendor(lines)
    shares = apportion_checkout(quote, groups)

    done = {o.vendor_id for o in await orders_for_reference(session, reference)}
    created: List[str] = sorted(done)

    for vendor_id, vendor_lines in groups.items():
        if vendor_id in done:
            logger.info(
                "Order for reference=%s vendor=%s already exists – skipped",
                reference, vendor_id,
            )
            continue

        order = _build_order(attempt, vendor_id, vendor_lines, shares[vendor_id])
        try:
            await _insert_order(session, order)
        except SQLAlchemyError as exc:
            await session.rollback()
            await session.refresh(attempt)
            if isinstance(exc, IntegrityError) and await _order_exists(session, reference, vendor_id):
                logger.info(
                    "Concurrent materialization wrote reference=%s vendor=%s first",
                    reference, vendor_id,
                )
                created.append(vendor_id)
                continue

            attempt.status = "reconciliation_needed"
            await _record_failure(
                session, reference, buyer_id, "create_order",
                {"vendor_id": vendor_id, "created_vendor_ids": created},
                str(exc),
            )
            await session.commit()
            logger.error(
                "Order insert failed reference=%s buyer=%s vendor=%s created=%s: %s",
                reference, buyer_id, vendor_id, created, exc,
            )
            raise PartialMaterializationFailure(reference, created, vendor_id) from exc

        created.append(vendor_id)
        logger.info(
            "Order created reference=%s vendor=%s total=%d",
            reference, vendor_id, shares[vendor_id].subtotal,
        )

    # ── 3. Cart is cleared only once every vendor order exists ───────────────
    try:
        await clear_cart(session, buyer_id)
        attempt.status = "materialized"
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        await _record_failure(
            session, reference, buyer_id, "clear_cart", {"vendor_ids": created}, str(exc)
        )
        await session.commit()
        logger.error(
            "Cart clear failed reference=%s buyer=%s (orders in place; retry will clear): %s",
            reference, buyer_id, exc,
        )

    return await orders_for_reference(session, reference)
