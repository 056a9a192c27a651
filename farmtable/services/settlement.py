"""
Server-side cancellation procedure.

cancel_order() flips the order to cancelled and issues the refund in a single
transaction: either both are committed or neither is.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.config import Settings, get_settings
from farmtable.errors import NotCancellable, OrderNotFound
from farmtable.models import Order, RefundRecord
from farmtable.services import refunds
from farmtable.services.orders import CANCELLABLE, check_transition
from farmtable.services.quote import percent_of
from farmtable.services.wallet import credit_wallet

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    order: Order
    refund: Optional[RefundRecord]

    @property
    def refund_processed(self) -> bool:
        return self.refund is not None


def refund_amount(order: Order, settings: Settings) -> int:
    """
    Amount owed back for cancelling *order* in its current status.
    Orders already being prepared lose the configured processing deduction.
    """
    charged = order.amount_charged
    deduction = 0
    if order.status == "processing":
        deduction = percent_of(charged, settings.processing_cancellation_fee_percent)
    return max(charged - deduction, 0)


async def cancel_order(
    session: AsyncSession,
    order_id: str,
    buyer_id: str,
    reason: str,
    refund_method: str,
    *,
    settings: Optional[Settings] = None,
) -> SettlementResult:
    settings = settings or get_settings()

    order = (
        await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if order is None or order.buyer_id != buyer_id:
        raise OrderNotFound("Order not found.", order_id=order_id)
    if order.status not in CANCELLABLE:
        raise NotCancellable(order_id, order.status)

    check_transition(order.status, "cancelled", via_cancellation=True)
    amount = refund_amount(order, settings)
    now = datetime.now(timezone.utc)

    order.status = "cancelled"
    order.cancellation_reason = reason
    order.cancelled_at = now

    refund: Optional[RefundRecord] = None
    if order.payment_status == "paid":
        refund = RefundRecord(
            id=str(uuid.uuid4()),
            order_id=order.id,
            buyer_id=order.buyer_id,
            reason=reason,
            amount=amount,
            method=refund_method,
            status="pending",
        )
        session.add(refund)

        if amount == 0:
            # Deduction withheld everything; nothing to send on either rail
            refund.status = "completed"
            refund.completed_at = now
            refund.note = "Processing fee withheld the full amount"
        elif refund_method == "wallet":
            await credit_wallet(
                session,
                order.buyer_id,
                amount,
                reference=f"refund_{refund.id}",
                description=f"Refund for cancelled order #{order.id[:8]}",
            )
            refund.status = "completed"
            refund.completed_at = now

        order.payment_status = (
            "partially_refunded" if amount < order.amount_charged else "refunded"
        )

    session.add(order)
    await session.commit()

    logger.info(
        "Order %s cancelled buyer=%s reason=%r refund=%s amount=%d method=%s",
        order_id, buyer_id, reason,
        refund.status if refund else "none", amount, refund_method,
    )

    if refund is not None and refund.method == "bank" and refund.status == "pending":
        refunds.enqueue(refund.id)

    return SettlementResult(order=order, refund=refund)
