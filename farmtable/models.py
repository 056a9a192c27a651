"""
SQLAlchemy ORM models: catalog, cart, checkout attempts, orders, refunds, wallets.

All money columns hold integer minor currency units (kobo).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


JsonType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    pass


# ── Catalog + cart (shared with other screens) ───────────────────────────────

class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")
    vendor_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    vendor_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (CheckConstraint("price >= 0", name="ck_product_price"),)


class CartLine(Base):
    __tablename__ = "cart_lines"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(
        Text, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_cart_quantity"),)


# ── Checkout ─────────────────────────────────────────────────────────────────

class CheckoutAttempt(Base):
    """
    Durable record of one checkout attempt, keyed by the payment reference.
    initialized -> verified -> materializing -> materialized | reconciliation_needed
    """
    __tablename__ = "checkout_attempts"

    reference: Mapped[str] = mapped_column(Text, primary_key=True)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    buyer_email: Mapped[str] = mapped_column(Text, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    quote: Mapped[dict] = mapped_column(JsonType, nullable=False)
    lines: Mapped[list] = mapped_column(JsonType, nullable=False)
    promo_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="initialized")
    gateway_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_paid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    vendor_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Frozen copy of name/price/quantity/unit at order time
    line_items: Mapped[list] = mapped_column(JsonType, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_fee_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    service_fee_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_reference: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="unpaid")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        UniqueConstraint(
            "payment_reference", "vendor_id",
            name="uq_order_reference_vendor",
        ),
    )

    @property
    def amount_charged(self) -> int:
        """What the buyer actually paid for this order, fee and discount shares included."""
        return (
            self.total
            + self.delivery_fee_share
            + self.service_fee_share
            - self.discount_share
        )


class MaterializationFailure(Base):
    """Dead-letter row for a checkout whose payment was captured but orders were not."""
    __tablename__ = "materialization_failures"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False)
    step: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    last_tried: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Refunds + wallet ─────────────────────────────────────────────────────────

class RefundRecord(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    gateway_refund_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Wallet(Base):
    __tablename__ = "wallets"

    buyer_id: Mapped[str] = mapped_column(Text, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    buyer_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
