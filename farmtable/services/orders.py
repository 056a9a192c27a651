"""
Order lifecycle: pending -> confirmed -> processing -> delivered, or -> cancelled.

delivered and cancelled are terminal. Reaching cancelled is reserved for the
cancellation procedure (services.settlement); everything else uses
advance_order().
"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.errors import InvalidTransition, OrderNotFound
from farmtable.models import Order
from farmtable.schemas import ProgressStep

logger = logging.getLogger(__name__)

ORDER_FLOW = ("pending", "confirmed", "processing", "delivered")
CANCELLABLE = frozenset({"pending", "confirmed", "processing"})
TERMINAL = frozenset({"delivered", "cancelled"})

_STEP_LABELS = {
    "pending": "Order Placed",
    "confirmed": "Confirmed",
    "processing": "Preparing",
    "delivered": "Delivered",
}


def check_transition(current: str, target: str, *, via_cancellation: bool = False) -> None:
    """Raise InvalidTransition unless current -> target is a legal move."""
    if current in TERMINAL or current not in ORDER_FLOW:
        raise InvalidTransition(current, target)
    if target == "cancelled":
        if not via_cancellation or current not in CANCELLABLE:
            raise InvalidTransition(current, target)
        return
    if target not in ORDER_FLOW:
        raise InvalidTransition(current, target)
    if ORDER_FLOW.index(target) <= ORDER_FLOW.index(current):
        raise InvalidTransition(current, target)


def progress_steps(status: str) -> Optional[List[ProgressStep]]:
    """Progress indicator for the success path; None for cancelled orders."""
    if status not in ORDER_FLOW:
        return None
    current = ORDER_FLOW.index(status)
    return [
        ProgressStep(
            key=key,
            label=_STEP_LABELS[key],
            completed=index <= current,
            active=index == current,
        )
        for index, key in enumerate(ORDER_FLOW)
    ]


async def get_order(
    session: AsyncSession,
    order_id: str,
    buyer_id: Optional[str] = None,
    fresh: bool = False,
) -> Order:
    """
    Load an order, optionally scoped to a buyer.
    fresh=True bypasses the identity map so the status is the persisted one.
    """
    stmt = select(Order).where(Order.id == order_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None or (buyer_id is not None and order.buyer_id != buyer_id):
        raise OrderNotFound("Order not found.", order_id=order_id)
    return order


async def list_orders(session: AsyncSession, buyer_id: str) -> List[Order]:
    rows = await session.execute(
        select(Order)
        .where(Order.buyer_id == buyer_id)
        .order_by(Order.created_at.desc(), Order.id)
    )
    return list(rows.scalars().all())


async def orders_for_reference(session: AsyncSession, reference: str) -> List[Order]:
    rows = await session.execute(
        select(Order)
        .where(Order.payment_reference == reference)
        .order_by(Order.created_at, Order.vendor_id)
    )
    return list(rows.scalars().all())


async def advance_order(session: AsyncSession, order_id: str, target: str) -> Order:
    """Move an order forward along the success path (vendor / admin tooling)."""
    order = (
        await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFound("Order not found.", order_id=order_id)

    check_transition(order.status, target)
    previous = order.status
    order.status = target
    session.add(order)
    await session.commit()
    logger.info("Order %s moved %s -> %s", order_id, previous, target)
    return order
