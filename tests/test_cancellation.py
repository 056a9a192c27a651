"""
Cancellation gating, the transactional cancel + refund procedure and bank refund settlement.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from farmtable.config import Settings
from farmtable.errors import (
    CancellationFailed,
    GatewayUnavailable,
    InvalidCancellationRequest,
    InvalidConfirmation,
    NotCancellable,
)
from farmtable.models import Order, RefundRecord, WalletTransaction
from farmtable.schemas import BuyerContext, CancellationRequest
from farmtable.services.cancellation import prepare_cancellation, request_cancellation
from farmtable.services.orders import get_order
from farmtable.services.refunds import (
    mark_refund_failed,
    mark_refund_processed,
    submit_refund,
    unresolved_refunds,
)
from farmtable.services.settlement import cancel_order
from farmtable.services.wallet import credit_wallet, get_balance

BUYER = BuyerContext(buyer_id="buyer-1", email="ada@example.com")


async def _paid_order(
    session,
    status: str = "pending",
    payment_status: str = "paid",
    reference: str = "order_1_buyer-1_abcdef",
) -> Order:
    order = Order(
        buyer_id=BUYER.buyer_id,
        vendor_id="vendor-a",
        vendor_name="Green Acres",
        line_items=[{"product_id": "p-tomatoes", "name": "Tomatoes", "price": 500, "quantity": 2, "unit": "kg"}],
        total=1000,
        delivery_fee_share=150,
        service_fee_share=75,
        discount_share=100,
        payment_reference=reference,
        payment_method="card",
        payment_status=payment_status,
        status=status,
    )
    session.add(order)
    await session.commit()
    return order


async def _request(session, order, reason="Changed my mind", method="wallet", **kwargs):
    prompt = await prepare_cancellation(session, BUYER, order.id)
    body = CancellationRequest(
        reason=reason, refund_method=method, confirmation_token=prompt.confirmation_token
    )
    return await request_cancellation(session, BUYER, order.id, body, **kwargs)


# ── Gating ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_prompt_lists_reasons_and_methods(db_session):
    order = await _paid_order(db_session)
    prompt = await prepare_cancellation(db_session, BUYER, order.id)
    assert "Changed my mind" in prompt.reasons
    assert prompt.refund_methods == ["wallet", "bank"]
    assert prompt.confirmation_token


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["delivered", "cancelled"])
async def test_terminal_orders_are_not_cancellable(db_session, status):
    order = await _paid_order(db_session, status=status)
    with pytest.raises(NotCancellable) as exc_info:
        await prepare_cancellation(db_session, BUYER, order.id)
    assert exc_info.value.status == status


@pytest.mark.asyncio
async def test_status_is_rechecked_at_request_time(db_session):
    order = await _paid_order(db_session)
    prompt = await prepare_cancellation(db_session, BUYER, order.id)

    # Vendor delivers while the buyer is filling in the form
    order.status = "delivered"
    await db_session.commit()

    body = CancellationRequest(
        reason="Changed my mind", refund_method="wallet", confirmation_token=prompt.confirmation_token
    )
    with pytest.raises(NotCancellable):
        await request_cancellation(db_session, BUYER, order.id, body)


@pytest.mark.asyncio
async def test_unknown_reason_rejected(db_session):
    order = await _paid_order(db_session)
    with pytest.raises(InvalidCancellationRequest):
        await _request(db_session, order, reason="Because")
    assert (await get_order(db_session, order.id, fresh=True)).status == "pending"


@pytest.mark.asyncio
async def test_token_for_another_order_rejected(db_session):
    first = await _paid_order(db_session)
    second = await _paid_order(db_session, reference="order_2_buyer-1_abcdef")

    prompt = await prepare_cancellation(db_session, BUYER, first.id)
    body = CancellationRequest(
        reason="Other", refund_method="wallet", confirmation_token=prompt.confirmation_token
    )
    with pytest.raises(InvalidConfirmation):
        await request_cancellation(db_session, BUYER, second.id, body)


@pytest.mark.asyncio
async def test_garbage_token_rejected(db_session):
    order = await _paid_order(db_session)
    body = CancellationRequest(reason="Other", refund_method="wallet", confirmation_token="not-a-token")
    with pytest.raises(InvalidConfirmation):
        await request_cancellation(db_session, BUYER, order.id, body)


# ── Cancel + refund ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_refund_completes_immediately(db_session):
    order = await _paid_order(db_session)
    charged = order.amount_charged

    outcome = await _request(db_session, order, method="wallet")

    assert outcome.status == "cancelled"
    assert outcome.payment_status == "refunded"
    assert outcome.refund.status == "completed"
    assert outcome.refund.amount == charged == 1125
    assert "wallet" in outcome.message
    assert await get_balance(db_session, BUYER.buyer_id) == charged

    reloaded = await get_order(db_session, order.id, fresh=True)
    assert reloaded.cancellation_reason == "Changed my mind"
    assert reloaded.cancelled_at is not None


@pytest.mark.asyncio
async def test_bank_refund_is_queued_pending(db_session):
    order = await _paid_order(db_session, status="confirmed")

    with patch("farmtable.services.refunds.enqueue") as enqueue:
        outcome = await _request(db_session, order, method="bank")

    assert outcome.status == "cancelled"
    assert outcome.refund.status == "pending"
    assert "3-5 business days" in outcome.message
    enqueue.assert_called_once_with(outcome.refund.id)
    assert await get_balance(db_session, BUYER.buyer_id) == 0


@pytest.mark.asyncio
async def test_unpaid_order_cancels_without_refund(db_session):
    order = await _paid_order(db_session, payment_status="unpaid")
    outcome = await _request(db_session, order)
    assert outcome.status == "cancelled"
    assert outcome.refund is None
    assert (await db_session.execute(select(RefundRecord))).scalars().all() == []


@pytest.mark.asyncio
async def test_processing_deduction_makes_partial_refund(db_session):
    order = await _paid_order(db_session, status="processing")
    settings = Settings(processing_cancellation_fee_percent=20)

    result = await cancel_order(
        db_session, order.id, BUYER.buyer_id, "Other", "wallet", settings=settings
    )

    assert result.refund.amount == 900   # 1125 - 225
    assert result.order.payment_status == "partially_refunded"


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["wallet", "bank"])
async def test_full_deduction_still_settles_payment_status(db_session, method):
    order = await _paid_order(db_session, status="processing")
    settings = Settings(processing_cancellation_fee_percent=100)

    with patch("farmtable.services.refunds.enqueue") as enqueue:
        result = await cancel_order(
            db_session, order.id, BUYER.buyer_id, "Other", method, settings=settings
        )

    assert result.order.status == "cancelled"
    assert result.order.payment_status == "partially_refunded"
    assert (result.refund.amount, result.refund.status) == (0, "completed")
    enqueue.assert_not_called()
    assert await get_balance(db_session, BUYER.buyer_id) == 0
    assert (await db_session.execute(select(WalletTransaction))).scalars().all() == []


@pytest.mark.asyncio
async def test_failed_procedure_leaves_order_untouched(db_session):
    order = await _paid_order(db_session)

    async def broken(session, order_id, buyer_id, reason, refund_method):
        doomed = await get_order(session, order_id)
        doomed.status = "cancelled"
        await session.flush()
        raise OperationalError("UPDATE orders", {}, Exception("connection lost"))

    with pytest.raises(CancellationFailed) as exc_info:
        await _request(db_session, order, procedure=broken)

    assert exc_info.value.prior_status == "pending"
    reloaded = await get_order(db_session, order.id, fresh=True)
    assert reloaded.status == "pending"
    assert reloaded.payment_status == "paid"
    assert (await db_session.execute(select(RefundRecord))).scalars().all() == []


@pytest.mark.asyncio
async def test_second_cancellation_is_rejected(db_session):
    order = await _paid_order(db_session)
    await _request(db_session, order)
    with pytest.raises(NotCancellable):
        await prepare_cancellation(db_session, BUYER, order.id)
    assert await get_balance(db_session, BUYER.buyer_id) == 1125


# ── Wallet + bank refund settlement ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_credit_is_idempotent(db_session):
    assert await credit_wallet(db_session, "buyer-1", 500, "ref-1", "test")
    await db_session.commit()
    assert not await credit_wallet(db_session, "buyer-1", 500, "ref-1", "test")
    await db_session.commit()
    assert await get_balance(db_session, "buyer-1") == 500


async def _bank_refund(db_session) -> RefundRecord:
    order = await _paid_order(db_session)
    with patch("farmtable.services.refunds.enqueue"):
        result = await cancel_order(db_session, order.id, BUYER.buyer_id, "Other", "bank")
    return result.refund


@pytest.mark.asyncio
async def test_submit_moves_bank_refund_to_processing(db_session, gateway, policy):
    refund = await _bank_refund(db_session)

    submitted = await submit_refund(db_session, gateway, refund.id, policy)

    assert submitted.status == "processing"
    assert submitted.gateway_refund_id == "rf_1"
    assert gateway.refunds == [("order_1_buyer-1_abcdef", 1125)]

    completed = await mark_refund_processed(db_session, "rf_1")
    assert completed.status == "completed"
    assert completed.completed_at is not None


@pytest.mark.asyncio
async def test_gateway_rejection_falls_back_to_wallet(db_session, make_gateway, policy):
    refund = await _bank_refund(db_session)

    gateway = make_gateway(fail_refund=True)
    settled = await submit_refund(db_session, gateway, refund.id, policy)

    assert len(gateway.refunds) == 1
    assert settled.method == "wallet"
    assert settled.status == "completed"
    assert "Bank refund failed" in settled.note
    assert await get_balance(db_session, BUYER.buyer_id) == 1125


@pytest.mark.asyncio
async def test_failed_webhook_falls_back_to_wallet_once(db_session, gateway, policy):
    refund = await _bank_refund(db_session)
    await submit_refund(db_session, gateway, refund.id, policy)

    await mark_refund_failed(db_session, "rf_1", "Account closed")
    await mark_refund_failed(db_session, "rf_1", "Account closed")

    assert await get_balance(db_session, BUYER.buyer_id) == 1125
    txns = (await db_session.execute(select(WalletTransaction))).scalars().all()
    assert len(txns) == 1


@pytest.mark.asyncio
async def test_worker_drains_queued_refunds():
    import asyncio

    from farmtable.services import refunds

    with patch("farmtable.services.refunds._handle_job") as handle:
        refunds.enqueue("refund-1")
        refunds.enqueue("refund-2")
        task = asyncio.create_task(refunds.worker())
        await asyncio.wait_for(refunds._queue.join(), timeout=5)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert [c.args[0].refund_id for c in handle.await_args_list] == ["refund-1", "refund-2"]


@pytest.mark.asyncio
async def test_timed_out_submission_is_not_repeated_or_credited(db_session, gateway):
    import asyncio

    from farmtable.services.retry import RetryPolicy

    real_refund = gateway.refund

    async def slow_refund(reference, amount):
        result = await real_refund(reference, amount)
        await asyncio.sleep(1)
        return result

    gateway.refund = slow_refund
    refund = await _bank_refund(db_session)

    settled = await submit_refund(
        db_session, gateway, refund.id, RetryPolicy(attempts=3, base_delay=0, timeout=0.05)
    )

    assert gateway.refunds == [("order_1_buyer-1_abcdef", 1125)]
    assert (settled.method, settled.status) == ("bank", "processing")
    assert settled.gateway_refund_id is None
    assert "unknown" in settled.note
    assert await get_balance(db_session, BUYER.buyer_id) == 0
    assert [r.id for r in await unresolved_refunds(db_session)] == [refund.id]

    # The provider did accept it; its webhook settles the record by charge reference
    completed = await mark_refund_processed(
        db_session, "rf_1", transaction_reference="order_1_buyer-1_abcdef", amount=1125
    )
    assert completed.id == refund.id
    assert completed.status == "completed"
    assert completed.gateway_refund_id == "rf_1"
    assert await get_balance(db_session, BUYER.buyer_id) == 0
    assert await unresolved_refunds(db_session) == []


@pytest.mark.asyncio
async def test_unknown_submission_later_failed_falls_back_once(db_session, make_gateway, policy):
    gateway = make_gateway()

    async def unreachable(reference, amount):
        gateway.refunds.append((reference, amount))
        raise GatewayUnavailable("connection reset", reference=reference)

    gateway.refund = unreachable
    refund = await _bank_refund(db_session)
    await submit_refund(db_session, gateway, refund.id, policy)
    assert len(gateway.refunds) == 1

    await mark_refund_failed(
        db_session, "rf_77", "Account closed", transaction_reference="order_1_buyer-1_abcdef", amount=1125
    )
    await mark_refund_failed(db_session, "rf_77", "Account closed")

    reloaded = await db_session.get(RefundRecord, refund.id)
    assert (reloaded.method, reloaded.status) == ("wallet", "completed")
    assert await get_balance(db_session, BUYER.buyer_id) == 1125
