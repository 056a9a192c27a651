"""
Farm-to-table checkout & settlement service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from farmtable.errors import CheckoutError
from farmtable.routers import admin, cart, checkout, orders, webhooks
from farmtable.services import refunds

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Farmtable Checkout",
    version="1.0.0",
    description="Multi-vendor checkout, Paystack settlement and order cancellation/refunds.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

@app.exception_handler(CheckoutError)
async def _checkout_error(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.context)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(cart.router)
app.include_router(checkout.router)
app.include_router(orders.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

@app.on_event("startup")
async def _startup() -> None:
    logger.info("Starting refund worker …")
    asyncio.create_task(refunds.worker(), name="refund-worker")
    await _requeue_pending_refunds()
    logger.info("Checkout service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    logger.info("Draining refund queue …")
    try:
        await asyncio.wait_for(refunds._queue.join(), timeout=30)
    except asyncio.TimeoutError:
        logger.warning("Refund queue did not drain within 30 s")


async def _requeue_pending_refunds() -> None:
    """Pick up bank refunds that were pending when the last process stopped."""
    try:
        await refunds.requeue_pending()
    except Exception as exc:
        logger.warning("Pending refund requeue skipped (table may not exist yet): %s", exc)
