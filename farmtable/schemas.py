"""
Pydantic schemas for request/response validation and the checkout value types.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

PaymentMethod = Literal["card", "bank_transfer"]
RefundMethod = Literal["wallet", "bank"]
PromoStatus = Literal["none", "applied", "invalid"]
OrderStatus = Literal["pending", "confirmed", "processing", "delivered", "cancelled"]
PaymentStatus = Literal["unpaid", "paid", "refunded", "partially_refunded"]
RefundStatus = Literal["pending", "processing", "completed", "failed"]


# ── Cart + quote ─────────────────────────────────────────────────────────────

class CatalogPrice(BaseModel):
    price: int = Field(..., ge=0)
    unit: str = ""
    vendor_id: str


class CartLineView(BaseModel):
    """A cart line joined with the catalog fields read at quote time."""
    id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    name: str = ""
    price: int = Field(..., ge=0)
    unit: str = ""
    vendor_id: str
    vendor_name: str = ""

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class CheckoutQuote(BaseModel):
    subtotal: int
    delivery_fee: int
    service_fee: int
    discount: int
    total: int


class QuoteResult(BaseModel):
    quote: CheckoutQuote
    promo_status: PromoStatus = "none"
    promo_code: Optional[str] = None


class CartOut(BaseModel):
    lines: List[CartLineView]
    quote: CheckoutQuote
    promo_status: PromoStatus
    promo_message: Optional[str] = None


class CartQuantityUpdate(BaseModel):
    quantity: int


# ── Payment ──────────────────────────────────────────────────────────────────

class PaymentIntent(BaseModel):
    reference: str
    amount: int = Field(..., ge=0)   # minor units
    channel: PaymentMethod
    metadata: Dict[str, Any] = {}


class InitializedPayment(BaseModel):
    authorization_url: str
    reference: str


class VerificationResult(BaseModel):
    status: Literal["success", "failed", "pending"]
    amount_paid: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class GatewayRefund(BaseModel):
    refund_id: Optional[str] = None
    status: str = "pending"


class SessionOutcome(str, Enum):
    completed = "completed"
    cancelled = "cancelled"
    dismissed = "dismissed"


class CheckoutRequest(BaseModel):
    payment_method: PaymentMethod
    promo_code: Optional[str] = None


class CheckoutStartOut(BaseModel):
    reference: str
    authorization_url: str
    quote: CheckoutQuote
    promo_status: PromoStatus
    pay_label: str


class SessionOutcomeIn(BaseModel):
    outcome: SessionOutcome


class SessionOutcomeOut(BaseModel):
    reference: str
    offer_verification: bool
    message: str


# ── Orders ───────────────────────────────────────────────────────────────────

class LineItemSnapshot(BaseModel):
    product_id: str
    name: str
    price: int
    quantity: int
    unit: str = ""


class ProgressStep(BaseModel):
    key: str
    label: str
    completed: bool
    active: bool


class RefundOut(BaseModel):
    id: str
    order_id: str
    reason: str
    amount: int
    method: RefundMethod
    status: RefundStatus
    note: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    buyer_id: str
    vendor_id: str
    vendor_name: str
    line_items: List[LineItemSnapshot]
    total: int
    delivery_fee_share: int
    service_fee_share: int
    discount_share: int
    payment_reference: str
    payment_method: str
    payment_status: PaymentStatus
    status: OrderStatus
    cancellation_reason: Optional[str] = None
    created_at: datetime
    progress: Optional[List[ProgressStep]] = None

    model_config = {"from_attributes": True}


class CheckoutResult(BaseModel):
    status: Literal["materialized", "verification_offered"]
    reference: str
    orders: List[OrderOut] = []


class OrderStatusUpdate(BaseModel):
    status: Literal["confirmed", "processing", "delivered"]


# ── Cancellation ─────────────────────────────────────────────────────────────

class CancellationPrompt(BaseModel):
    order_id: str
    reasons: List[str]
    refund_methods: List[RefundMethod]
    confirmation_token: str
    expires_in: int


class CancellationRequest(BaseModel):
    reason: str
    refund_method: RefundMethod
    confirmation_token: str


class CancellationOutcome(BaseModel):
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    refund: Optional[RefundOut] = None
    message: str


# ── Webhooks / admin ─────────────────────────────────────────────────────────

class PaystackEvent(BaseModel):
    event: str
    data: Dict[str, Any] = {}


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"


class ReconciliationItem(BaseModel):
    reference: str
    buyer_id: str
    status: str
    amount: int
    amount_paid: Optional[int] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class FailureRow(BaseModel):
    id: int
    reference: str
    step: str
    error: Optional[str] = None
    attempts: int
    last_tried: datetime

    model_config = {"from_attributes": True}


class ReconciliationOut(BaseModel):
    attempts: List[ReconciliationItem]
    failures: List[FailureRow]
    refunds: List[RefundOut] = []


# ── Session context ──────────────────────────────────────────────────────────

class BuyerContext(BaseModel):
    """Read-only identity of the buyer on whose behalf a call is made."""
    buyer_id: str
    email: str

    model_config = {"frozen": True}
