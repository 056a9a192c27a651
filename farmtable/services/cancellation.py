"""
Buyer-facing cancellation.

Two steps: prepare_cancellation() checks the order can be cancelled and hands
out a confirmation token; request_cancellation() validates the collected
reason/refund choice and the token, re-reads the order and invokes the
transactional cancel procedure. On any failure the order keeps its prior state.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.config import get_settings
from farmtable.crypto import check_confirmation_token, issue_confirmation_token
from farmtable.errors import (
    CancellationFailed,
    GatewayUnavailable,
    InvalidCancellationRequest,
    NotCancellable,
)
from farmtable.schemas import (
    BuyerContext,
    CancellationOutcome,
    CancellationPrompt,
    CancellationRequest,
    RefundOut,
)
from farmtable.services.orders import CANCELLABLE, get_order
from farmtable.services.settlement import SettlementResult, cancel_order

logger = logging.getLogger(__name__)

CANCELLATION_REASONS = (
    "Changed my mind",
    "Found a better price",
    "Ordered by mistake",
    "Delivery takes too long",
    "Need to modify order",
    "Other",
)
REFUND_METHODS = ("wallet", "bank")

CancelProcedure = Callable[..., Awaitable[SettlementResult]]


async def prepare_cancellation(
    session: AsyncSession, buyer: BuyerContext, order_id: str
) -> CancellationPrompt:
    settings = get_settings()
    order = await get_order(session, order_id, buyer.buyer_id, fresh=True)
    if order.status not in CANCELLABLE:
        raise NotCancellable(order_id, order.status)
    return CancellationPrompt(
        order_id=order.id,
        reasons=list(CANCELLATION_REASONS),
        refund_methods=list(REFUND_METHODS),
        confirmation_token=issue_confirmation_token(order.id, buyer.buyer_id),
        expires_in=settings.confirmation_token_ttl_seconds,
    )


def _outcome_message(result: SettlementResult, bank_window: str) -> str:
    refund = result.refund
    if refund is None:
        return "Your order has been cancelled."
    if refund.amount == 0:
        return "Your order has been cancelled. The processing fee covers the full amount paid, so no refund is due."
    if refund.status == "completed":
        return "Your order has been cancelled. Your refund has been credited to your wallet."
    return (
        "Your order has been cancelled. Your bank refund has been requested; "
        f"it usually arrives within {bank_window}."
    )


async def request_cancellation(
    session: AsyncSession,
    buyer: BuyerContext,
    order_id: str,
    request: CancellationRequest,
    procedure: Optional[CancelProcedure] = None,
) -> CancellationOutcome:
    settings = get_settings()
    procedure = procedure or cancel_order

    if request.reason not in CANCELLATION_REASONS:
        raise InvalidCancellationRequest(
            "Please choose one of the listed cancellation reasons.",
            reason=request.reason,
        )
    if request.refund_method not in REFUND_METHODS:
        raise InvalidCancellationRequest(
            "Please choose wallet or bank for your refund.",
            refund_method=request.refund_method,
        )
    check_confirmation_token(
        request.confirmation_token,
        order_id,
        buyer.buyer_id,
        ttl=settings.confirmation_token_ttl_seconds,
    )

    # Re-read the persisted status; the vendor may have moved the order meanwhile
    order = await get_order(session, order_id, buyer.buyer_id, fresh=True)
    if order.status not in CANCELLABLE:
        raise NotCancellable(order_id, order.status)
    prior_status = order.status

    try:
        result = await procedure(
            session, order_id, buyer.buyer_id, request.reason, request.refund_method
        )
    except NotCancellable:
        await session.rollback()
        raise
    except (SQLAlchemyError, GatewayUnavailable) as exc:
        await session.rollback()
        logger.error(
            "Cancellation failed order=%s buyer=%s status=%s method=%s: %s",
            order_id, buyer.buyer_id, prior_status, request.refund_method, exc,
        )
        raise CancellationFailed(order_id, prior_status) from exc

    return CancellationOutcome(
        order_id=result.order.id,
        status=result.order.status,
        payment_status=result.order.payment_status,
        refund=RefundOut.model_validate(result.refund) if result.refund else None,
        message=_outcome_message(result, settings.bank_settlement_window),
    )
