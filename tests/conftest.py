"""
Pytest configuration and fixtures.

Every test gets its own in-memory SQLite database and a frozen clock, so the
settlement jobs run end to end without PostgreSQL or Stripe.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

# Settings are read at import time by the application module
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace_settlement.api import dependencies
from marketplace_settlement.api.main import app
from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.orders import OrderService
from marketplace_settlement.core.payouts import PayoutBatchJob, PayoutService
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.core.reconciliation import ReconciliationEngine
from marketplace_settlement.database.connection import create_session_factory
from marketplace_settlement.database.models import (
    Base,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PayoutRequest,
    PayoutStatus,
    Seller,
)
from marketplace_settlement.integrations.stripe_client import StripeClient

# Wednesday, so business-day arithmetic crosses a weekend
FROZEN_NOW = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


class MonotonicClock:
    """Float clock for TTL caches."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class Seeder:
    """Creates rows directly, bypassing the services under test."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock):
        self.session_factory = session_factory
        self.clock = clock

    async def _add(self, obj: Any) -> Any:
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
        return obj

    async def seller(
        self,
        seller_id: str = "seller_1",
        balance_minor: int = 0,
        stripe_account_id: Optional[str] = "acct_test_1",
    ) -> Seller:
        return await self._add(
            Seller(
                id=seller_id,
                display_name=f"Store {seller_id}",
                stripe_account_id=stripe_account_id,
                available_balance_minor=balance_minor,
                created_at=self.clock(),
                updated_at=self.clock(),
            )
        )

    async def order(
        self,
        seller_id: str = "seller_1",
        total_minor: int = 1_000_000,
        status: str = OrderStatus.DELIVERED,
        delivered_days_ago: Optional[float] = 8,
        commission_rate: Optional[Decimal] = None,
        dispute: Optional[dict] = None,
    ) -> Order:
        delivered_at = None
        if delivered_days_ago is not None:
            delivered_at = self.clock() - timedelta(days=delivered_days_ago)
        return await self._add(
            Order(
                id=uuid.uuid4(),
                buyer_id="buyer_1",
                seller_id=seller_id,
                items=[{"product_id": "prod_1", "quantity": 1, "price_minor": total_minor}],
                status=status,
                payment_reference="pi_checkout",
                total_minor=total_minor,
                currency="NGN",
                commission_rate=commission_rate,
                dispute=dispute,
                delivered_at=delivered_at,
                created_at=self.clock() - timedelta(days=10),
                updated_at=self.clock(),
            )
        )

    async def payout(
        self,
        seller_id: str = "seller_1",
        amount_minor: int = 500_000,
        status: str = PayoutStatus.PENDING,
        scheduled_days_ago: float = 1,
        requested_days_ago: float = 4,
    ) -> PayoutRequest:
        return await self._add(
            PayoutRequest(
                id=uuid.uuid4(),
                seller_id=seller_id,
                amount_minor=amount_minor,
                currency="NGN",
                status=status,
                requested_at=self.clock() - timedelta(days=requested_days_ago),
                scheduled_for=self.clock() - timedelta(days=scheduled_days_ago),
            )
        )

    async def payment(
        self,
        gateway_reference: Optional[str],
        amount_minor: int = 1_000_000,
        status: str = PaymentStatus.SUCCEEDED,
        created_days_ago: float = 1,
    ) -> Payment:
        order = await self.order(status=OrderStatus.PAID, delivered_days_ago=None)
        return await self._add(
            Payment(
                id=uuid.uuid4(),
                order_id=order.id,
                gateway_reference=gateway_reference,
                amount_minor=amount_minor,
                currency="NGN",
                status=status,
                created_at=self.clock() - timedelta(days=created_days_ago),
                updated_at=self.clock(),
            )
        )

    async def get(self, model: Any, key: Any) -> Any:
        async with self.session_factory() as db:
            return await db.get(model, key)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="marketplace-settlement-test",
        app_env="test",
        log_level="DEBUG",
        cron_secret="abc",
        api_key="test-api-key",
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FrozenClock:
    """Frozen UTC clock."""
    return FrozenClock()


@pytest.fixture
def monotonic_clock() -> MonotonicClock:
    """Frozen monotonic clock for caches."""
    return MonotonicClock()


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock) -> Seeder:
    """Row factory for the test database."""
    return Seeder(session_factory, clock)


@pytest.fixture
def platform_settings(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
) -> PlatformSettingsProvider:
    """Platform settings provider on the test database."""
    return PlatformSettingsProvider(
        settings=test_settings, session_factory=session_factory, clock=clock
    )


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe client double."""
    return AsyncMock(spec=StripeClient)


@pytest_asyncio.fixture
async def api_client(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    platform_settings: PlatformSettingsProvider,
    mock_stripe_client: AsyncMock,
    clock: FrozenClock,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client for the app, wired to the test database and Stripe double."""
    payout_job = PayoutBatchJob(
        settings=test_settings,
        session_factory=session_factory,
        stripe_client=mock_stripe_client,
        clock=clock,
    )
    app.dependency_overrides.update(
        {
            get_settings: lambda: test_settings,
            dependencies.get_platform_settings: lambda: platform_settings,
            dependencies.get_order_service: lambda: OrderService(
                session_factory=session_factory, clock=clock
            ),
            dependencies.get_payout_batch_job: lambda: payout_job,
            dependencies.get_payout_service: lambda: PayoutService(
                settings=test_settings,
                session_factory=session_factory,
                platform_settings=platform_settings,
                batch_job=payout_job,
                clock=clock,
            ),
            dependencies.get_escrow_release_job: lambda: EscrowReleaseJob(
                settings=test_settings,
                session_factory=session_factory,
                platform_settings=platform_settings,
                clock=clock,
            ),
            dependencies.get_reconciliation_engine: lambda: ReconciliationEngine(
                stripe_client=mock_stripe_client,
                session_factory=session_factory,
                settings=test_settings,
                clock=clock,
            ),
        }
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
