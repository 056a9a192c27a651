"""
Bank refund submission.

Architecture:
  - The cancellation procedure enqueues a RefundJob after its transaction commits.
  - A background worker drains the queue, submits the refund to the gateway
    exactly once, and moves the record pending -> processing.
  - When the gateway declines the refund, it falls back to an instant wallet credit.
  - When the outcome is unknown (timeout, transport error, 5xx) the record goes
    to processing without a gateway id and shows up in reconciliation; the
    provider may already be paying it out, so nothing is credited.
  - The gateway's refund webhooks finish the job (processed -> completed,
    failed -> wallet fallback).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.database import get_db_ctx
from farmtable.errors import GatewayUnavailable, RefundRejected
from farmtable.models import Order, RefundRecord
from farmtable.services.paystack import PaymentGateway, get_gateway
from farmtable.services.retry import RetryPolicy
from farmtable.services.wallet import credit_wallet

logger = logging.getLogger(__name__)

# ── Job definition ───────────────────────────────────────────────────────────

@dataclass
class RefundJob:
    refund_id: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Singleton queue ──────────────────────────────────────────────────────────

_queue: asyncio.Queue[RefundJob] = asyncio.Queue(maxsize=10_000)


def enqueue(refund_id: str) -> None:
    """Non-blocking enqueue. A dropped job stays pending and shows up in reconciliation."""
    try:
        _queue.put_nowait(RefundJob(refund_id=refund_id))
    except asyncio.QueueFull:
        logger.error("Refund queue full – refund %s left pending", refund_id)


# ── Settlement steps ─────────────────────────────────────────────────────────

async def fallback_to_wallet(session: AsyncSession, refund: RefundRecord, note: str) -> RefundRecord:
    """Credit the buyer's wallet instead of the bank rail and complete the record."""
    await credit_wallet(
        session,
        refund.buyer_id,
        refund.amount,
        reference=f"refund_{refund.id}_wallet_fallback",
        description=f"Refund for order #{refund.order_id[:8]} (bank refund failed, credited to wallet)",
    )
    refund.method = "wallet"
    refund.status = "completed"
    refund.completed_at = datetime.now(timezone.utc)
    refund.note = note
    session.add(refund)
    await session.commit()
    logger.warning(
        "Refund %s for order %s fell back to wallet: %s",
        refund.id, refund.order_id, note,
    )
    return refund


async def submit_refund(
    session: AsyncSession,
    gateway: PaymentGateway,
    refund_id: str,
    policy: Optional[RetryPolicy] = None,
) -> Optional[RefundRecord]:
    """Hand a pending bank refund to the original payment rail."""
    refund = await session.get(RefundRecord, refund_id)
    if refund is None:
        logger.warning("Refund %s vanished before submission", refund_id)
        return None
    if refund.method != "bank" or refund.status != "pending":
        return refund

    order = await session.get(Order, refund.order_id)
    try:
        result = await (policy or RetryPolicy.from_settings()).once().run(
            gateway.refund,
            order.payment_reference,
            refund.amount,
            description=f"refund order={refund.order_id}",
        )
    except RefundRejected as exc:
        return await fallback_to_wallet(session, refund, f"Bank refund failed: {exc.message}")
    except GatewayUnavailable as exc:
        refund.status = "processing"
        refund.note = f"Submission outcome unknown: {exc.message}"
        session.add(refund)
        await session.commit()
        logger.error(
            "Refund %s order=%s amount=%d submitted with unknown outcome; awaiting webhook: %s",
            refund.id, refund.order_id, refund.amount, exc.message,
        )
        return refund

    refund.status = "processing"
    refund.gateway_refund_id = result.refund_id
    session.add(refund)
    await session.commit()
    logger.info(
        "Refund %s submitted order=%s amount=%d gateway_id=%s",
        refund.id, refund.order_id, refund.amount, result.refund_id,
    )
    return refund


def _unresolved():
    return select(RefundRecord).where(
        RefundRecord.method == "bank",
        RefundRecord.status == "processing",
        RefundRecord.gateway_refund_id.is_(None),
    )


async def unresolved_refunds(session: AsyncSession) -> List[RefundRecord]:
    """Bank refunds whose submission outcome is unknown."""
    return list(
        (await session.execute(_unresolved().order_by(RefundRecord.created_at))).scalars().all()
    )


async def _find_refund(
    session: AsyncSession,
    gateway_refund_id: str,
    transaction_reference: Optional[str] = None,
    amount: Optional[int] = None,
) -> Optional[RefundRecord]:
    refund = (
        await session.execute(
            select(RefundRecord).where(RefundRecord.gateway_refund_id == gateway_refund_id)
        )
    ).scalar_one_or_none()
    if refund is not None or not transaction_reference:
        return refund

    # Submission timed out before we learnt the gateway id; match on the charge instead
    query = (
        _unresolved()
        .join(Order, Order.id == RefundRecord.order_id)
        .where(Order.payment_reference == transaction_reference)
        .order_by(RefundRecord.created_at)
    )
    if amount is not None:
        query = query.where(RefundRecord.amount == amount)
    refund = (await session.execute(query)).scalars().first()
    if refund is not None:
        refund.gateway_refund_id = gateway_refund_id
        logger.info(
            "Refund %s matched to gateway_id=%s via reference=%s",
            refund.id, gateway_refund_id, transaction_reference,
        )
    return refund


async def mark_refund_processed(
    session: AsyncSession,
    gateway_refund_id: str,
    transaction_reference: Optional[str] = None,
    amount: Optional[int] = None,
) -> Optional[RefundRecord]:
    refund = await _find_refund(session, gateway_refund_id, transaction_reference, amount)
    if refund is None or refund.status == "completed":
        return refund
    refund.status = "completed"
    refund.completed_at = datetime.now(timezone.utc)
    session.add(refund)
    await session.commit()
    logger.info("Bank refund %s completed (gateway_id=%s)", refund.id, gateway_refund_id)
    return refund


async def mark_refund_failed(
    session: AsyncSession,
    gateway_refund_id: str,
    message: str,
    transaction_reference: Optional[str] = None,
    amount: Optional[int] = None,
) -> Optional[RefundRecord]:
    refund = await _find_refund(session, gateway_refund_id, transaction_reference, amount)
    if refund is None or refund.status == "completed":
        return refund
    return await fallback_to_wallet(session, refund, f"Bank refund failed: {message}")


# ── Worker ───────────────────────────────────────────────────────────────────

async def _handle_job(job: RefundJob) -> None:
    async with get_db_ctx() as session:
        await submit_refund(session, get_gateway(), job.refund_id)


async def worker() -> None:
    """
    Runs as a long-lived background task.
    Drains the refund queue and submits each refund.
    """
    logger.info("Refund worker started")
    while True:
        job = await _queue.get()
        try:
            await _handle_job(job)
        except Exception as exc:
            logger.exception("Unexpected error in refund worker: %s", exc)
        finally:
            _queue.task_done()


async def requeue_pending() -> int:
    """Enqueue bank refunds left pending by a restart or a dropped job."""
    async with get_db_ctx() as session:
        ids = (
            await session.execute(
                select(RefundRecord.id).where(
                    RefundRecord.method == "bank",
                    RefundRecord.status == "pending",
                )
            )
        ).scalars().all()
    for refund_id in ids:
        enqueue(refund_id)
    if ids:
        logger.info("Re-queued %d pending bank refund(s)", len(ids))
    return len(ids)
