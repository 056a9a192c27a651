"""
Checkout / settlement error taxonomy.

Every error carries the HTTP status it maps to, a stable ``code``, whether the
buyer can simply try again, and a message safe to show to the buyer.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    status_code: int = 400
    code: str = "checkout_error"
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.context,
        }


class GatewayUnavailable(CheckoutError):
    """The payment provider errored, timed out, or answered without what we need."""
    status_code = 503
    code = "gateway_unavailable"
    retryable = True


class RefundRejected(CheckoutError):
    """The provider answered and declined the refund; no money left through it."""
    status_code = 502
    code = "refund_rejected"


class PaymentNotConfirmed(CheckoutError):
    """Verification did not report success; no order may be created."""
    status_code = 402
    code = "payment_not_confirmed"
    retryable = True

    def __init__(self, reference: str, gateway_status: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or "We could not confirm your payment yet. You can verify again.",
            reference=reference,
            gateway_status=gateway_status,
        )
        self.reference = reference
        self.gateway_status = gateway_status


class PartialMaterializationFailure(CheckoutError):
    """
    Payment captured but not every vendor order could be written.
    Persisted for out-of-band reconciliation; never swallowed.
    """
    status_code = 500
    code = "partial_materialization_failure"
    retryable = False

    def __init__(
        self,
        reference: str,
        created_vendor_ids: List[str],
        failed_vendor_id: Optional[str],
    ) -> None:
        super().__init__(
            "Your payment succeeded but we could not finish creating your orders. "
            f"Please contact support with reference {reference}.",
            reference=reference,
            created_vendor_ids=created_vendor_ids,
            failed_vendor_id=failed_vendor_id,
        )
        self.reference = reference
        self.created_vendor_ids = created_vendor_ids
        self.failed_vendor_id = failed_vendor_id


class InvalidTransition(CheckoutError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Order cannot move from {current!r} to {target!r}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class NotCancellable(CheckoutError):
    status_code = 409
    code = "not_cancellable"

    def __init__(self, order_id: str, status: str) -> None:
        if status == "cancelled":
            message = "This order is already cancelled."
        elif status == "delivered":
            message = "Delivered orders cannot be cancelled. Please contact support for returns."
        else:
            message = f"Orders in {status!r} status cannot be cancelled."
        super().__init__(message, order_id=order_id, status=status)
        self.order_id = order_id
        self.status = status


class CancellationFailed(CheckoutError):
    """The cancellation procedure failed; the order keeps its prior state."""
    status_code = 503
    code = "cancellation_failed"
    retryable = True

    def __init__(self, order_id: str, prior_status: str) -> None:
        super().__init__(
            "We could not cancel your order right now. Nothing was changed; please try again.",
            order_id=order_id,
            status=prior_status,
        )
        self.order_id = order_id
        self.prior_status = prior_status


class InvalidCancellationRequest(CheckoutError):
    status_code = 422
    code = "invalid_cancellation_request"


class InvalidConfirmation(CheckoutError):
    status_code = 403
    code = "invalid_confirmation"


class EmptyCart(CheckoutError):
    code = "empty_cart"


class CheckoutNotFound(CheckoutError):
    status_code = 404
    code = "checkout_not_found"


class OrderNotFound(CheckoutError):
    status_code = 404
    code = "order_not_found"


class CartLineNotFound(CheckoutError):
    status_code = 404
    code = "cart_line_not_found"
