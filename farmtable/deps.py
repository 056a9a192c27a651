"""
FastAPI dependency utilities: buyer context, payment gateway, webhook and admin auth.
"""
from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from farmtable.config import get_settings
from farmtable.schemas import BuyerContext
from farmtable.services.paystack import PaymentGateway, get_gateway

logger = logging.getLogger(__name__)
settings = get_settings()


async def get_buyer(
    x_buyer_id: str | None = Header(default=None),
    x_buyer_email: str | None = Header(default=None),
) -> BuyerContext:
    """
    Buyer identity as asserted by the authenticating proxy in front of the service.
    Passed explicitly into every service call.
    """
    if not x_buyer_id or not x_buyer_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Please login to continue",
        )
    return BuyerContext(buyer_id=x_buyer_id, email=x_buyer_email)


async def payment_gateway() -> PaymentGateway:
    return get_gateway()


async def verify_paystack_signature(
    request: Request,
    x_paystack_signature: str | None = Header(default=None),
) -> bytes:
    """
    Verify a Paystack webhook: hex HMAC-SHA512 of the raw body keyed by the secret key.
    Returns the raw request body so routers don't need to re-read it.
    """
    body = await request.body()

    if not settings.paystack_secret_key:
        logger.error("PAYSTACK_SECRET_KEY is not configured – rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification is not configured",
        )

    if not x_paystack_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Paystack-Signature header",
        )

    expected = hmac.new(
        key=settings.paystack_secret_key.encode(),
        msg=body,
        digestmod=hashlib.sha512,
    ).hexdigest()

    if not hmac.compare_digest(expected, x_paystack_signature.strip().lower()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook signature mismatch",
        )

    return body


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    """Bearer-token guard for operator endpoints."""
    token = settings.admin_api_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled (ADMIN_API_TOKEN not set)",
        )
    if authorization and authorization.startswith("Bearer "):
        provided = authorization.removeprefix("Bearer ").strip()
        if hmac.compare_digest(provided, token):
            return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing Bearer token",
    )
