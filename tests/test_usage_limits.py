"""
Tests for usage limit monitoring.
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, List

import pytest
import pytest_asyncio

from billing_engine.core.periods import month_window
from billing_engine.core.usage_ledger import record_usage
from billing_engine.core.usage_limits import check_usage_limits, usage_levels
from billing_engine.database.models import Plan, Subscription, UsageLimit, UsageLimitAlert

from .conftest import NOW


@pytest_asyncio.fixture
async def api_limit(add: Any, plan: Plan) -> UsageLimit:
    """100 api calls a month, warning at 80%, critical at 90%."""
    return await add(
        UsageLimit(plan_id=plan.id, feature_id="api_calls", limit_quantity=Decimal("100"))
    )


async def _use(session_factory: Any, subscription_id: uuid.UUID, quantity: Any, at: Any = NOW) -> None:
    async with session_factory() as db:
        await record_usage(db, subscription_id, "api_calls", quantity, recorded_at=at)
        await db.commit()


async def _check(
    session_factory: Any, subscription_id: uuid.UUID, now: Any = NOW
) -> List[UsageLimitAlert]:
    async with session_factory() as db:
        subscription = await db.get(Subscription, subscription_id)
        alerts = await check_usage_limits(db, subscription, ["email"], now)
        await db.commit()
    return alerts


class TestUsageLevels:
    """Test suite for threshold evaluation."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "usage,expected",
        [
            ("79.9", []),
            ("80", ["WARNING"]),
            ("90", ["CRITICAL"]),
            ("100", ["CRITICAL"]),
            ("100.5", ["CRITICAL", "EXCEEDED"]),
        ],
    )
    def test_levels(self, usage: str, expected: List[str]) -> None:
        limit = UsageLimit(
            feature_id="api_calls", limit_quantity=Decimal("100"), warning_pct=80, critical_pct=90
        )
        assert usage_levels(Decimal(usage), limit) == expected


class TestMonthWindow:
    """Test suite for the monthly usage window."""

    @pytest.mark.unit
    def test_window_spans_calendar_month(self) -> None:
        start, end = month_window(NOW)
        assert (start.year, start.month, start.day, start.hour) == (2024, 1, 1, 0)
        assert (end.year, end.month, end.day) == (2024, 2, 1)


class TestCheckUsageLimits:
    """Test suite for usage limit alerts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_warning_alerts_once_per_month(
        self, session_factory: Any, subscription: Subscription, api_limit: UsageLimit,
        outbox_events: Any,
    ) -> None:
        await _use(session_factory, subscription.id, 85)

        first = await _check(session_factory, subscription.id)
        second = await _check(session_factory, subscription.id, now=NOW + timedelta(hours=1))

        assert [a.level for a in first] == ["WARNING"]
        assert first[0].usage_quantity == Decimal("85")
        assert second == []
        (event,) = await outbox_events("usage_warning")
        assert event.payload["channel"] == "email"
        assert event.payload["data"]["feature_id"] == "api_calls"
        assert Decimal(event.payload["data"]["usage"]) == Decimal("85")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_escalates_from_warning_to_critical(
        self, session_factory: Any, subscription: Subscription, api_limit: UsageLimit,
        outbox_events: Any,
    ) -> None:
        await _use(session_factory, subscription.id, 85)
        await _check(session_factory, subscription.id)

        await _use(session_factory, subscription.id, 10)
        alerts = await _check(session_factory, subscription.id)

        assert [a.level for a in alerts] == ["CRITICAL"]
        assert len(await outbox_events("usage_warning")) == 1
        assert len(await outbox_events("usage_critical")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exceeded_marks_subscription_until_next_month(
        self, session_factory: Any, subscription: Subscription, api_limit: UsageLimit,
        get: Any, outbox_events: Any,
    ) -> None:
        await _use(session_factory, subscription.id, 120)

        alerts = await _check(session_factory, subscription.id)

        assert [a.level for a in alerts] == ["CRITICAL", "EXCEEDED"]
        assert (await get(Subscription, subscription.id)).usage_status == "EXCEEDED"
        assert len(await outbox_events("usage_exceeded")) == 1

        next_month = NOW + timedelta(days=31)
        assert await _check(session_factory, subscription.id, now=next_month) == []
        assert (await get(Subscription, subscription.id)).usage_status == "NORMAL"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_of_previous_month_not_counted(
        self, session_factory: Any, subscription: Subscription, api_limit: UsageLimit,
    ) -> None:
        await _use(session_factory, subscription.id, 500, at=NOW - timedelta(days=20))

        assert await _check(session_factory, subscription.id) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_without_limits(
        self, session_factory: Any, subscription: Subscription, fetch: Any
    ) -> None:
        await _use(session_factory, subscription.id, 10_000)

        assert await _check(session_factory, subscription.id) == []
        assert await fetch(UsageLimitAlert) == []


class TestBillingCycleChecksLimits:
    """Test suite for limit checks during the usage billing cycle."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cycle_raises_usage_alerts(
        self, usage_cycle: Any, session_factory: Any, subscription: Subscription,
        api_limit: UsageLimit, api_call_tiers: Any, outbox_events: Any, fetch: Any,
    ) -> None:
        await _use(session_factory, subscription.id, 95)

        report = await usage_cycle.run_billing_cycle(now=NOW)

        assert report.processed == 1
        (alert,) = await fetch(UsageLimitAlert)
        assert alert.level == "CRITICAL"
        assert len(await outbox_events("usage_critical")) == 1
