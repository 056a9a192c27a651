"""
Buyer wallet credits. Balances are written only here, inside the caller's transaction.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmtable.models import Wallet, WalletTransaction

logger = logging.getLogger(__name__)


async def credit_wallet(
    session: AsyncSession,
    buyer_id: str,
    amount: int,
    reference: str,
    description: str,
) -> bool:
    """
    Add *amount* to the buyer's wallet and record the transaction.
    Idempotent on *reference*: returns False when it was already credited.
    Caller commits.
    """
    already = (
        await session.execute(
            select(WalletTransaction.id).where(WalletTransaction.reference == reference)
        )
    ).scalar_one_or_none()
    if already is not None:
        logger.info("Wallet credit %s already applied – skipped", reference)
        return False

    wallet = (
        await session.execute(
            select(Wallet).where(Wallet.buyer_id == buyer_id).with_for_update()
        )
    ).scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(buyer_id=buyer_id, balance=0)
        session.add(wallet)

    wallet.balance += amount
    session.add(
        WalletTransaction(
            buyer_id=buyer_id,
            amount=amount,
            reference=reference,
            description=description,
        )
    )
    await session.flush()
    logger.info(
        "Wallet credited buyer=%s amount=%d reference=%s new_balance=%d",
        buyer_id, amount, reference, wallet.balance,
    )
    return True


async def get_balance(session: AsyncSession, buyer_id: str) -> int:
    wallet = await session.get(Wallet, buyer_id)
    return wallet.balance if wallet else 0
