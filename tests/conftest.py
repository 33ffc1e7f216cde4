"""
Pytest configuration and fixtures.

Every test gets its own in-memory SQLite database. The engines open their
own sessions from ``session_factory``; tests seed and inspect state through
fresh sessions so they never read a stale identity map.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_engine.config import Settings
from billing_engine.core.dunning import DunningCommunicator
from billing_engine.core.locking import DatabaseLeaseLocker
from billing_engine.core.outbox import OutboxPublisher
from billing_engine.core.retry_scheduler import DunningRetryScheduler
from billing_engine.core.revenue_recognition import RevenueRecognitionEngine
from billing_engine.core.usage_billing import UsageBillingCycle
from billing_engine.database.connection import create_session_factory
from billing_engine.database.models import (
    Base,
    Invoice,
    OutboxEvent,
    Payment,
    Plan,
    Subscription,
    UsageTier,
)
from billing_engine.integrations.gateway import BillingGateway, ChargeResult
from billing_engine.integrations.notifications import NotificationDispatcher

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeGateway(BillingGateway):
    """In-memory gateway that deduplicates usage reports by idempotency key."""

    def __init__(self) -> None:
        self.reports: List[Dict[str, Any]] = []
        self.accepted: Dict[str, str] = {}
        self.report_delay = 0.0
        self.report_error: Optional[Exception] = None
        self.charges: List[str] = []
        self.charge_results: List[ChargeResult] = []
        self.charge_delay = 0.0
        self.charge_error: Optional[Exception] = None

    async def report_usage(
        self,
        external_ref: str,
        feature_id: str,
        quantity: Decimal,
        timestamp: datetime,
        idempotency_key: str,
    ) -> str:
        self.reports.append(
            {
                "external_ref": external_ref,
                "feature_id": feature_id,
                "quantity": quantity,
                "timestamp": timestamp,
                "idempotency_key": idempotency_key,
            }
        )
        if self.report_delay:
            await asyncio.sleep(self.report_delay)
        if self.report_error is not None:
            raise self.report_error
        if idempotency_key not in self.accepted:
            self.accepted[idempotency_key] = f"mbur_{len(self.accepted) + 1}"
        return self.accepted[idempotency_key]

    async def charge_again(self, payment_ref: str) -> ChargeResult:
        self.charges.append(payment_ref)
        if self.charge_delay:
            await asyncio.sleep(self.charge_delay)
        if self.charge_error is not None:
            raise self.charge_error
        if self.charge_results:
            return self.charge_results.pop(0)
        return ChargeResult(success=False, code="card_declined", message="Your card was declined.")

    def billed_quantity(self, feature_id: str) -> Decimal:
        """Quantity the gateway counted once per idempotency key."""
        seen = set()
        total = Decimal("0")
        for report in self.reports:
            key = report["idempotency_key"]
            if report["feature_id"] == feature_id and key in self.accepted and key not in seen:
                seen.add(key)
                total += Decimal(str(report["quantity"]))
        return total


class RecordingDispatcher(NotificationDispatcher):
    """Collects delivered notifications; optionally fails on one channel."""

    def __init__(self, failing_channel: Optional[str] = None) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.failing_channel = failing_channel

    async def notify(self, channel: str, template_key: str, data: Dict[str, Any]) -> None:
        if channel == self.failing_channel:
            raise ConnectionError(f"{channel} provider unavailable")
        self.sent.append({"channel": channel, "template_key": template_key, "data": data})


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite://",
        app_name="billing-engine-test",
        app_env="test",
        log_level="DEBUG",
        sweep_concurrency=1,
        external_call_timeout_seconds=0.2,
        usage_report_max_attempts=1,
        owner_notification_channels=["email"],
        escalation_channel="slack",
        alert_channel="pagerduty",
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine shared by all sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def locker(session_factory: async_sessionmaker[AsyncSession]) -> DatabaseLeaseLocker:
    return DatabaseLeaseLocker(session_factory, lease_seconds=60, owner="test-worker")


@pytest.fixture
def usage_cycle(
    gateway: FakeGateway,
    locker: DatabaseLeaseLocker,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> UsageBillingCycle:
    return UsageBillingCycle(gateway, locker, session_factory, settings=test_settings)


@pytest.fixture
def revenue_engine(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> RevenueRecognitionEngine:
    return RevenueRecognitionEngine(session_factory, settings=test_settings)


@pytest.fixture
def retry_scheduler(
    gateway: FakeGateway,
    locker: DatabaseLeaseLocker,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> DunningRetryScheduler:
    return DunningRetryScheduler(gateway, locker, session_factory, test_settings)


@pytest.fixture
def dunning(
    retry_scheduler: DunningRetryScheduler,
    locker: DatabaseLeaseLocker,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> DunningCommunicator:
    return DunningCommunicator(retry_scheduler, locker, session_factory, test_settings)


@pytest.fixture
def outbox_publisher(
    dispatcher: RecordingDispatcher, session_factory: async_sessionmaker[AsyncSession]
) -> OutboxPublisher:
    return OutboxPublisher(dispatcher, session_factory, batch_size=50)


@pytest.fixture
def add(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Persist objects in their own committed transaction and return the first."""

    async def _add(*objects: Any) -> Any:
        async with session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0]

    return _add


@pytest.fixture
def fetch(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Load rows of a model through a fresh session."""

    async def _fetch(model: Any, *criteria: Any, order_by: Any = None) -> List[Any]:
        async with session_factory() as session:
            stmt = select(model).where(*criteria)
            if order_by is not None:
                stmt = stmt.order_by(order_by)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
def get(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Load one row by primary key through a fresh session."""

    async def _get(model: Any, ident: Any) -> Any:
        async with session_factory() as session:
            return await session.get(model, ident)

    return _get


@pytest_asyncio.fixture
async def plan(add: Callable[..., Any]) -> Plan:
    return await add(Plan(name="Pro", price_cents=12000, currency="USD", interval="month"))


@pytest_asyncio.fixture
async def subscription(add: Callable[..., Any], plan: Plan) -> Subscription:
    return await add(
        Subscription(
            organization_id="org_acme",
            plan_id=plan.id,
            status="ACTIVE",
            external_customer_ref="cus_test_123",
            created_at=NOW - timedelta(days=60),
        )
    )


@pytest_asyncio.fixture
async def api_call_tiers(add: Callable[..., Any]) -> List[UsageTier]:
    """Unit tiers [0-50) @10c, [50-200) @5c, [200, inf) @2c for "api_calls"."""
    tiers = [
        UsageTier(feature_id="api_calls", version=1, from_quantity=Decimal("0"),
                  to_quantity=Decimal("50"), unit_price=Decimal("10")),
        UsageTier(feature_id="api_calls", version=1, from_quantity=Decimal("50"),
                  to_quantity=Decimal("200"), unit_price=Decimal("5")),
        UsageTier(feature_id="api_calls", version=1, from_quantity=Decimal("200"),
                  to_quantity=None, unit_price=Decimal("2")),
    ]
    await add(*tiers)
    return tiers


@pytest_asyncio.fixture
async def failed_invoice_payment(
    add: Callable[..., Any], subscription: Subscription
) -> Payment:
    """Open invoice due at NOW with its failed payment."""
    invoice = Invoice(
        subscription_id=subscription.id,
        amount_cents=4900,
        currency="USD",
        due_date=NOW,
        status="open",
    )
    await add(invoice)
    payment = Payment(
        subscription_id=subscription.id,
        invoice_id=invoice.id,
        amount_cents=4900,
        currency="USD",
        status="failed",
        external_payment_ref="in_test_456",
        failure_code="card_declined",
    )
    return await add(payment)


@pytest.fixture
def outbox_events(fetch: Callable[..., Any]) -> Callable[..., Any]:
    """Queued notifications, optionally filtered by template key."""

    async def _events(template_key: Optional[str] = None) -> List[OutboxEvent]:
        criteria = [] if template_key is None else [OutboxEvent.event_type == template_key]
        return await fetch(OutboxEvent, *criteria, order_by=OutboxEvent.created_at)

    return _events
