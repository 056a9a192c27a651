"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres needed),
plus an in-process payment gateway double.
"""
from __future__ import annotations

import os

# Settings are read once at import time; pin the test environment first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")
os.environ.setdefault("CONFIG_ENCRYPTION_KEY", "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE=")
os.environ.setdefault("ADMIN_API_TOKEN", "admin-token")
os.environ.setdefault("DELIVERY_FEE", "300")
os.environ.setdefault("SERVICE_FEE", "150")
os.environ.setdefault("PROMO_CODES_JSON", '{"WELCOME10": 10}')
os.environ.setdefault("GATEWAY_RETRY_BASE_SECONDS", "0")

from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from farmtable.errors import GatewayUnavailable, RefundRejected
from farmtable.models import Base, CartLine, Product
from farmtable.schemas import (
    GatewayRefund,
    InitializedPayment,
    PaymentIntent,
    VerificationResult,
)
from farmtable.services.quote import Pricing
from farmtable.services.retry import RetryPolicy

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

PRICING = Pricing(delivery_fee=300, service_fee=150, promo_codes={"WELCOME10": 10})
NO_WAIT = RetryPolicy(attempts=3, base_delay=0, timeout=5)


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(TEST_DB_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


class FakeGateway:
    """Records calls and answers the way Paystack would for the configured outcome."""

    def __init__(
        self,
        verify_status: str = "success",
        fail_initialize: bool = False,
        fail_verify: bool = False,
        fail_refund: bool = False,
    ) -> None:
        self.verify_status = verify_status
        self.fail_initialize = fail_initialize
        self.fail_verify = fail_verify
        self.fail_refund = fail_refund
        self.paid: Dict[str, int] = {}
        self.initialized: List[PaymentIntent] = []
        self.verified: List[str] = []
        self.refunds: List[tuple] = []

    async def initialize(self, intent: PaymentIntent, email: str) -> InitializedPayment:
        self.initialized.append(intent)
        if self.fail_initialize:
            raise GatewayUnavailable("gateway down", reference=intent.reference)
        self.paid.setdefault(intent.reference, intent.amount)
        return InitializedPayment(
            authorization_url=f"https://checkout.paystack.com/{intent.reference}",
            reference=intent.reference,
        )

    async def verify(self, reference: str) -> VerificationResult:
        self.verified.append(reference)
        if self.fail_verify:
            raise GatewayUnavailable("gateway down", reference=reference)
        amount = self.paid.get(reference, 0) if self.verify_status == "success" else 0
        return VerificationResult(status=self.verify_status, amount_paid=amount)

    async def refund(self, reference: str, amount: int) -> GatewayRefund:
        self.refunds.append((reference, amount))
        if self.fail_refund:
            raise RefundRejected("Transaction has been fully reversed", reference=reference)
        return GatewayRefund(refund_id=f"rf_{len(self.refunds)}", status="pending")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


async def seed_catalog(session: AsyncSession) -> Dict[str, Product]:
    products = {
        "tomatoes": Product(
            id="p-tomatoes", name="Tomatoes", price=500, unit="kg",
            vendor_id="vendor-a", vendor_name="Green Acres",
        ),
        "yam": Product(
            id="p-yam", name="Yam", price=1000, unit="tuber",
            vendor_id="vendor-b", vendor_name="Okafor Farms",
        ),
        "eggs": Product(
            id="p-eggs", name="Eggs", price=250, unit="crate",
            vendor_id="vendor-c", vendor_name="Sunrise Poultry",
        ),
        "pepper": Product(
            id="p-pepper", name="Pepper", price=120, unit="basket",
            vendor_id="vendor-a", vendor_name="Green Acres",
        ),
    }
    session.add_all(products.values())
    await session.commit()
    return products


async def add_to_cart(
    session: AsyncSession,
    buyer_id: str,
    product_id: str,
    quantity: int,
    line_id: Optional[str] = None,
) -> CartLine:
    line = CartLine(buyer_id=buyer_id, product_id=product_id, quantity=quantity)
    if line_id:
        line.id = line_id
    session.add(line)
    await session.commit()
    return line


@pytest_asyncio.fixture(scope="function")
async def catalog(db_session) -> Dict[str, Product]:
    return await seed_catalog(db_session)


@pytest.fixture
def add_line():
    return add_to_cart


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def pricing() -> Pricing:
    return PRICING


@pytest.fixture
def policy() -> RetryPolicy:
    return NO_WAIT


BUYER_HEADERS = {"X-Buyer-Id": "buyer-1", "X-Buyer-Email": "ada@example.com"}


@pytest.fixture
def buyer_headers() -> Dict[str, str]:
    return dict(BUYER_HEADERS)


@pytest_asyncio.fixture(scope="function")
async def api(session_factory, gateway) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database and the fake gateway."""
    from farmtable.database import get_db
    from farmtable.deps import payment_gateway
    from farmtable.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
