"""
Admin / operational endpoints (Bearer ADMIN_API_TOKEN).

GET  /admin/health
GET  /admin/reconciliation                 attempts needing attention, dead-letter rows, unresolved refunds
POST /admin/checkout/{reference}/retry     re-run materialization for a reference
POST /admin/orders/{order_id}/status       advance an order along the success path
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db
from farmtable.deps import payment_gateway, require_admin
from farmtable.models import CheckoutAttempt, MaterializationFailure
from farmtable.schemas import (
    FailureRow,
    HealthResponse,
    OrderOut,
    OrderStatusUpdate,
    ReconciliationItem,
    ReconciliationOut,
    RefundOut,
)
from farmtable.services.checkout import order_out
from farmtable.services.materializer import materialize
from farmtable.services.orders import advance_order
from farmtable.services.paystack import PaymentGateway
from farmtable.services.refunds import unresolved_refunds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

# Attempts in these states have (or may have) captured money without orders
_NEEDS_ATTENTION = ("verified", "materializing", "reconciliation_needed")


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get(
    "/reconciliation",
    response_model=ReconciliationOut,
    dependencies=[Depends(require_admin)],
)
async def reconciliation(db: AsyncSession = Depends(get_db)) -> ReconciliationOut:
    attempts = (
        await db.execute(
            select(CheckoutAttempt)
            .where(CheckoutAttempt.status.in_(_NEEDS_ATTENTION))
            .order_by(CheckoutAttempt.updated_at)
        )
    ).scalars().all()
    failures = (
        await db.execute(
            select(MaterializationFailure).order_by(MaterializationFailure.last_tried.desc())
        )
    ).scalars().all()
    return ReconciliationOut(
        attempts=[ReconciliationItem.model_validate(a) for a in attempts],
        failures=[FailureRow.model_validate(f) for f in failures],
        refunds=[RefundOut.model_validate(r) for r in await unresolved_refunds(db)],
    )


@router.post(
    "/checkout/{reference}/retry",
    response_model=List[OrderOut],
    dependencies=[Depends(require_admin)],
)
async def retry_materialization(
    reference: str,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(payment_gateway),
) -> List[OrderOut]:
    logger.info("Operator retry of materialization for reference=%s", reference)
    orders = await materialize(db, gateway, reference)
    return [order_out(o) for o in orders]


@router.post(
    "/orders/{order_id}/status",
    response_model=OrderOut,
    dependencies=[Depends(require_admin)],
)
async def set_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    return order_out(await advance_order(db, order_id, body.status))
