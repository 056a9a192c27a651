"""
Fernet-sealed confirmation tokens for destructive buyer actions.

A token binds (order_id, buyer_id) and expires after the configured TTL, so a
cancellation can only be requested with a token issued by a prior prompt.
"""
from __future__ import annotations

import base64
import json
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

from farmtable.config import get_settings
from farmtable.errors import InvalidConfirmation

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        raw = (
            os.environ.get("CONFIG_ENCRYPTION_KEY", "").strip()
            or get_settings().config_encryption_key.strip()
        )
        if not raw:
            raise RuntimeError(
                "CONFIG_ENCRYPTION_KEY is not set. "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        # Accept Fernet keys, or derive one from a raw 32-char secret
        try:
            _fernet = Fernet(raw.encode())
        except ValueError:
            padded = base64.urlsafe_b64encode(raw[:32].ljust(32).encode())
            _fernet = Fernet(padded)
    return _fernet


def issue_confirmation_token(order_id: str, buyer_id: str) -> str:
    payload = json.dumps({"order_id": order_id, "buyer_id": buyer_id}).encode()
    return _get_fernet().encrypt(payload).decode()


def check_confirmation_token(token: str, order_id: str, buyer_id: str, ttl: int) -> None:
    """Raise InvalidConfirmation unless *token* was issued for this order and buyer within *ttl* seconds."""
    try:
        payload = json.loads(_get_fernet().decrypt(token.encode(), ttl=ttl))
    except (InvalidToken, ValueError):
        logger.warning("Rejected confirmation token for order=%s buyer=%s", order_id, buyer_id)
        raise InvalidConfirmation(
            "This confirmation has expired. Please start the cancellation again.",
            order_id=order_id,
        )
    if payload.get("order_id") != order_id or payload.get("buyer_id") != buyer_id:
        logger.warning("Confirmation token mismatch for order=%s buyer=%s", order_id, buyer_id)
        raise InvalidConfirmation(
            "This confirmation does not belong to this order.",
            order_id=order_id,
        )
