"""
Tests for the sweep worker wiring.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from billing_engine.core.usage_ledger import record_usage
from billing_engine.database.models import Payment, UsageCharge
from billing_engine.services import build_services
from billing_engine.workers import sweep_worker
from billing_engine.workers.sweep_worker import SWEEPS, run_sweeps_once

from .conftest import NOW


@pytest.fixture
def services(
    test_settings: Any, session_factory: Any, gateway: Any, dispatcher: Any, locker: Any
) -> Any:
    return build_services(
        settings=test_settings,
        session_factory=session_factory,
        gateway=gateway,
        dispatcher=dispatcher,
        locker=locker,
    )


class TestRunSweepsOnce:
    """Test suite for one-shot sweep runs."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_runs_every_sweep(
        self,
        services: Any,
        session_factory: Any,
        fetch: Any,
        subscription: Any,
        api_call_tiers: Any,
        failed_invoice_payment: Payment,
    ) -> None:
        async with session_factory() as db:
            await record_usage(db, subscription.id, "api_calls", Decimal("60"), recorded_at=NOW)
            await db.commit()

        reports = await run_sweeps_once(services, now=NOW + timedelta(days=2))

        assert list(reports) == list(SWEEPS)
        assert reports["usage_billing"].processed == 1
        assert reports["dunning"].processed == 1
        assert all(report.ok for report in reports.values())
        assert (await fetch(UsageCharge))[0].amount_cents == 550

        delivered = await services.outbox.process_batch()
        assert delivered >= 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_selected_sweeps_only(self, services: Any) -> None:
        reports = await run_sweeps_once(services, sweeps=["payment_retries"], now=NOW)
        assert list(reports) == ["payment_retries"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_sweep_does_not_stop_others(self, services: Any, mocker: Any) -> None:
        mocker.patch.object(
            services.revenue, "run_deferred_sweep", AsyncMock(side_effect=RuntimeError("db down"))
        )

        reports = await run_sweeps_once(services, now=NOW)

        assert "deferred_revenue" not in reports
        assert set(reports) == {"usage_billing", "payment_retries", "dunning"}


class TestMain:
    """Test suite for the worker command line."""

    @pytest.mark.unit
    def test_arguments(self, mocker: Any) -> None:
        start = mocker.patch.object(sweep_worker, "start_sweep_worker", MagicMock())
        run = mocker.patch.object(sweep_worker.asyncio, "run")

        sweep_worker.main(["--sweep", "dunning", "--sweep", "usage_billing", "--once"])

        start.assert_called_once_with(
            sweeps=["dunning", "usage_billing"], once=True, create_tables=False
        )
        run.assert_called_once_with(start.return_value)

    @pytest.mark.unit
    def test_unknown_sweep_rejected(self) -> None:
        with pytest.raises(SystemExit):
            sweep_worker.main(["--sweep", "invoicing"])
