#!/usr/bin/env python3
"""
CLI: Inspect and repair checkouts whose payment was captured but orders were not.

Usage:
    # Attempts needing reconciliation, recorded failures, unresolved bank refunds
    python -m cli.reconcile --list

    # Re-run materialization for one reference (safe to repeat)
    python -m cli.reconcile --retry order_1700000000000_buyer123_ab12cd

    # Print the orders written for a reference
    python -m cli.reconcile --orders order_1700000000000_buyer123_ab12cd
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from farmtable.database import AsyncSessionLocal
from farmtable.errors import CheckoutError
from farmtable.models import CheckoutAttempt, MaterializationFailure
from farmtable.services.materializer import materialize
from farmtable.services.orders import orders_for_reference
from farmtable.services.paystack import get_gateway
from farmtable.services.refunds import unresolved_refunds


async def cmd_list() -> None:
    async with AsyncSessionLocal() as session:
        attempts = (
            await session.execute(
                select(CheckoutAttempt)
                .where(CheckoutAttempt.status.in_(("verified", "materializing", "reconciliation_needed")))
                .order_by(CheckoutAttempt.updated_at)
            )
        ).scalars().all()
        failures = (
            await session.execute(
                select(MaterializationFailure).order_by(MaterializationFailure.last_tried.desc())
            )
        ).scalars().all()
        refunds = await unresolved_refunds(session)

    if not attempts and not failures and not refunds:
        print("Nothing to reconcile.")
        return

    print(f"\n{'REFERENCE':<44} {'BUYER':<20} {'STATUS':<22} {'AMOUNT':>10} {'PAID':>10}")
    print("-" * 110)
    for a in attempts:
        paid = str(a.amount_paid) if a.amount_paid is not None else "-"
        print(f"{a.reference:<44} {a.buyer_id:<20} {a.status:<22} {a.amount:>10} {paid:>10}")

    if failures:
        print(f"\n{'REFERENCE':<44} {'STEP':<14} {'TRIES':>5} ERROR")
        print("-" * 110)
        for f in failures:
            print(f"{f.reference:<44} {f.step:<14} {f.attempts:>5} {(f.error or '')[:60]}")

    if refunds:
        print(f"\n{'REFUND_ID':<38} {'ORDER_ID':<38} {'AMOUNT':>10} NOTE")
        print("-" * 110)
        for r in refunds:
            print(f"{r.id:<38} {r.order_id:<38} {r.amount:>10} {(r.note or '')[:40]}")


async def cmd_retry(reference: str) -> None:
    async with AsyncSessionLocal() as session:
        try:
            orders = await materialize(session, get_gateway(), reference)
        except CheckoutError as exc:
            print(f"ERROR: {exc.code}: {exc.message}", file=sys.stderr)
            sys.exit(1)
    print(f"→ {reference}: {len(orders)} order(s) in place")
    for o in orders:
        print(f"  {o.id}  vendor={o.vendor_id}  total={o.total}  status={o.status}")


async def cmd_orders(reference: str) -> None:
    async with AsyncSessionLocal() as session:
        orders = await orders_for_reference(session, reference)

    if not orders:
        print(f"No orders found for {reference}.")
        return

    print(f"\n{'ORDER_ID':<38} {'VENDOR':<20} {'TOTAL':>10} {'CHARGED':>10} {'STATUS':<12} PAYMENT")
    print("-" * 110)
    for o in orders:
        print(
            f"{o.id:<38} {o.vendor_id:<20} {o.total:>10} {o.amount_charged:>10} "
            f"{o.status:<12} {o.payment_status}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Farmtable checkout reconciliation CLI")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="Show checkouts needing reconciliation")
    group.add_argument("--retry", metavar="REFERENCE", help="Re-run order materialization")
    group.add_argument("--orders", metavar="REFERENCE", help="Print orders for a reference")
    args = parser.parse_args()

    if args.list:
        asyncio.run(cmd_list())
    elif args.retry:
        asyncio.run(cmd_retry(args.retry))
    else:
        asyncio.run(cmd_orders(args.orders))


if __name__ == "__main__":
    main()
