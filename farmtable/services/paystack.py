"""
Thin Paystack REST client (no SDK dependency).
Uses the secret key as a Bearer token; every call raises GatewayUnavailable
when the provider cannot give a usable answer, and refund raises RefundRejected
when the provider declines it.
"""
from __future__ import annotations

import logging
import secrets
import time
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol

import httpx

from farmtable.config import get_settings
from farmtable.errors import GatewayUnavailable, RefundRejected
from farmtable.schemas import (
    GatewayRefund,
    InitializedPayment,
    PaymentIntent,
    SessionOutcome,
    VerificationResult,
)

logger = logging.getLogger(__name__)

_CHANNELS: Dict[str, List[str]] = {
    "card": ["card"],
    "bank_transfer": ["bank", "bank_transfer"],
}

# Provider transaction statuses that mean "money has not settled yet"
_PENDING_STATUSES = {"pending", "ongoing", "processing", "queued", "abandoned"}
_FAILED_STATUSES = {"failed", "reversed"}


def generate_reference(buyer_id: str) -> str:
    """One idempotency reference per checkout attempt; reused for every verify."""
    return f"order_{int(time.time() * 1000)}_{buyer_id[:8]}_{secrets.token_hex(3)}"


def needs_verification_prompt(outcome: SessionOutcome) -> bool:
    """
    A cancelled or dismissed hosted page does not mean the buyer did not pay;
    they may have completed payment before leaving the window.
    """
    return outcome in (SessionOutcome.cancelled, SessionOutcome.dismissed)


class PaymentGateway(Protocol):
    async def initialize(self, intent: PaymentIntent, email: str) -> InitializedPayment: ...

    async def verify(self, reference: str) -> VerificationResult: ...

    async def refund(self, reference: str, amount: int) -> GatewayRefund: ...


class HostedSessionLauncher(Protocol):
    """Opens the provider's hosted page and resolves once the buyer returns."""

    async def __call__(self, authorization_url: str) -> SessionOutcome: ...


class PaystackGateway:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout)
        self._callback_url = callback_url
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "PaystackGateway":
        settings = get_settings()
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout_seconds,
            callback_url=settings.paystack_callback_url,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._secret_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Paystack %s %s transport error: %s", method, path, exc)
            raise GatewayUnavailable(
                "We could not reach the payment provider. Please try again.",
                step=path,
            ) from exc

    async def initialize(self, intent: PaymentIntent, email: str) -> InitializedPayment:
        """Open a hosted payment session for the intent."""
        payload: Dict[str, Any] = {
            "email": email,
            "amount": intent.amount,
            "reference": intent.reference,
            "channels": _CHANNELS[intent.channel],
            "metadata": intent.metadata,
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        resp = await self._request("POST", "/transaction/initialize", json=payload)
        body = _json(resp)
        url = (body.get("data") or {}).get("authorization_url")
        if not resp.is_success or not body.get("status") or not url:
            logger.error(
                "Paystack initialize failed reference=%s status=%d body=%s",
                intent.reference, resp.status_code, resp.text[:300],
            )
            raise GatewayUnavailable(
                "We could not start your payment. Please try again.",
                reference=intent.reference,
            )
        return InitializedPayment(
            authorization_url=url,
            reference=(body.get("data") or {}).get("reference") or intent.reference,
        )

    async def verify(self, reference: str) -> VerificationResult:
        """Read the transaction outcome. Safe to call any number of times."""
        resp = await self._request("GET", f"/transaction/verify/{reference}")
        if resp.status_code >= 500:
            logger.error(
                "Paystack verify unavailable reference=%s status=%d body=%s",
                reference, resp.status_code, resp.text[:300],
            )
            raise GatewayUnavailable(
                "We could not check your payment right now. Please try again.",
                reference=reference,
            )
        body = _json(resp)
        if not resp.is_success or not body.get("status"):
            logger.warning(
                "Paystack verify rejected reference=%s status=%d message=%s",
                reference, resp.status_code, body.get("message"),
            )
            return VerificationResult(status="failed", amount_paid=0)

        data = body.get("data") or {}
        provider_status = str(data.get("status", "")).lower()
        if provider_status == "success":
            status = "success"
        elif provider_status in _FAILED_STATUSES:
            status = "failed"
        else:
            if provider_status not in _PENDING_STATUSES:
                logger.warning(
                    "Unknown Paystack status %r for reference=%s; treating as pending",
                    provider_status, reference,
                )
            status = "pending"
        return VerificationResult(status=status, amount_paid=int(data.get("amount") or 0))

    async def refund(self, reference: str, amount: int) -> GatewayRefund:
        """
        Ask the provider to return *amount* (minor units) to the original rail.

        A 4xx or ``status: false`` answer is a definite rejection (RefundRejected).
        Transport errors and 5xx answers leave the outcome unknown (GatewayUnavailable).
        """
        resp = await self._request(
            "POST", "/refund", json={"transaction": reference, "amount": amount}
        )
        if resp.status_code >= 500:
            logger.error(
                "Paystack refund outcome unknown reference=%s status=%d body=%s",
                reference, resp.status_code, resp.text[:300],
            )
            raise GatewayUnavailable(
                "The payment provider did not confirm the refund.",
                reference=reference,
            )
        body = _json(resp)
        if not resp.is_success or not body.get("status"):
            logger.error(
                "Paystack refund rejected reference=%s status=%d body=%s",
                reference, resp.status_code, resp.text[:300],
            )
            raise RefundRejected(
                body.get("message") or "Refund could not be submitted.",
                reference=reference,
            )
        data = body.get("data") or {}
        refund_id = data.get("id")
        return GatewayRefund(
            refund_id=str(refund_id) if refund_id is not None else None,
            status=str(data.get("status") or "pending"),
        )


def _json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@lru_cache(maxsize=1)
def get_gateway() -> PaystackGateway:
    return PaystackGateway.from_settings()
