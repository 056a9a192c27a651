"""
Timeout + bounded exponential-backoff policy for calls to external collaborators.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from farmtable.config import get_settings
from farmtable.errors import GatewayUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    timeout: float = 20.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            attempts=settings.gateway_max_retries,
            base_delay=settings.gateway_retry_base_seconds,
            timeout=settings.gateway_timeout_seconds,
        )

    def once(self) -> "RetryPolicy":
        """Same timeout, a single attempt: for calls that must not be repeated blindly."""
        return replace(self, attempts=1)

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        description: str = "gateway call",
        **kwargs: Any,
    ) -> T:
        """
        Await fn(*args, **kwargs) with a per-attempt timeout.
        Timeouts and GatewayUnavailable are retried; anything else propagates at once.
        """
        last_error: GatewayUnavailable | None = None

        for attempt in range(1, self.attempts + 1):
            try:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = GatewayUnavailable(
                    "The payment provider took too long to respond. Please try again.",
                    step=description,
                )
            except GatewayUnavailable as exc:
                last_error = exc

            logger.warning(
                "%s failed attempt=%d/%d: %s",
                description, attempt, self.attempts, last_error.message,
            )
            if attempt < self.attempts:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        assert last_error is not None
        logger.error("%s gave up after %d attempts", description, self.attempts)
        raise last_error
