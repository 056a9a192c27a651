"""
Paystack webhook receiver.

POST /webhooks/paystack

Handled events:
  charge.success     materialize the checkout (same path as buyer-side verify)
  refund.processed   bank refund landed -> refund completed
  refund.failed      bank refund bounced -> wallet fallback
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db
from farmtable.deps import payment_gateway, verify_paystack_signature
from farmtable.errors import CheckoutError
from farmtable.models import CheckoutAttempt
from farmtable.schemas import PaystackEvent
from farmtable.services.materializer import materialize
from farmtable.services.paystack import PaymentGateway
from farmtable.services.refunds import mark_refund_failed, mark_refund_processed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _refund_charge(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[int]]:
    """(transaction reference, amount) of a refund event, used when the gateway id is unknown to us."""
    amount = data.get("amount")
    return data.get("transaction_reference"), int(amount) if amount is not None else None


@router.post("/paystack", status_code=status.HTTP_204_NO_CONTENT)
async def paystack_event(
    body: bytes = Depends(verify_paystack_signature),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(payment_gateway),
) -> None:
    """
    Receive a Paystack event. Idempotent: re-delivering the same event is safe.
    Failures after a valid signature are logged and acknowledged so Paystack
    stops retrying; the reconciliation listing picks them up.
    """
    try:
        event = PaystackEvent(**json.loads(body))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Malformed event: {exc}",
        )

    data = event.data
    if event.event == "charge.success":
        reference = data.get("reference")
        if not reference or await db.get(CheckoutAttempt, reference) is None:
            logger.info("charge.success for unknown reference %r ignored", reference)
            return
        try:
            await materialize(db, gateway, reference)
        except CheckoutError as exc:
            logger.warning("charge.success reference=%s not materialized: %s", reference, exc.message)

    elif event.event == "refund.processed":
        refund = await mark_refund_processed(db, str(data.get("id")), *_refund_charge(data))
        if refund is None:
            logger.info("refund.processed for unknown refund id=%r ignored", data.get("id"))

    elif event.event == "refund.failed":
        message = data.get("message") or data.get("status") or "refund failed"
        refund = await mark_refund_failed(db, str(data.get("id")), message, *_refund_charge(data))
        if refund is None:
            logger.info("refund.failed for unknown refund id=%r ignored", data.get("id"))

    else:
        logger.debug("Ignored Paystack event %s", event.event)
