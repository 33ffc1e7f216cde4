"""
Tests for calendar helpers and sweep reports.
"""
from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.core.exceptions import ConfigurationError
from billing_engine.core.periods import add_months, days_past_due, months_elapsed
from billing_engine.core.sweeps import run_per_entity

UTC = timezone.utc


class TestPeriods:
    """Test suite for month arithmetic."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "start,months,expected",
        [
            (datetime(2024, 1, 31, tzinfo=UTC), 1, datetime(2024, 2, 29, tzinfo=UTC)),
            (datetime(2023, 1, 31, tzinfo=UTC), 1, datetime(2023, 2, 28, tzinfo=UTC)),
            (datetime(2024, 11, 15, tzinfo=UTC), 3, datetime(2025, 2, 15, tzinfo=UTC)),
            (datetime(2024, 5, 31, tzinfo=UTC), 12, datetime(2025, 5, 31, tzinfo=UTC)),
        ],
    )
    def test_add_months(self, start: datetime, months: int, expected: datetime) -> None:
        assert add_months(start, months) == expected

    @pytest.mark.unit
    def test_months_elapsed(self) -> None:
        start = datetime(2024, 1, 15, 12, tzinfo=UTC)

        assert months_elapsed(start, start) == 0
        assert months_elapsed(start, start - timedelta(days=40)) == 0
        assert months_elapsed(start, datetime(2024, 2, 15, 11, tzinfo=UTC)) == 0
        assert months_elapsed(start, datetime(2024, 2, 15, 12, tzinfo=UTC)) == 1
        assert months_elapsed(start, datetime(2025, 3, 1, tzinfo=UTC)) == 13

    @pytest.mark.unit
    def test_days_past_due(self) -> None:
        due = datetime(2024, 1, 15, 12, tzinfo=UTC)

        assert days_past_due(due, due - timedelta(days=1)) == 0
        assert days_past_due(due, due + timedelta(hours=23)) == 0
        assert days_past_due(due, due + timedelta(days=10, hours=2)) == 10


class TestRunPerEntity:
    """Test suite for bounded-parallel sweep execution."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failures_are_isolated(self) -> None:
        async def handler(entity_id: int) -> bool:
            if entity_id == 2:
                raise ConfigurationError("No pricing tiers configured", feature_id="api_calls")
            if entity_id == 3:
                raise RuntimeError("unexpected")
            return entity_id != 4

        report = await run_per_entity("test_sweep", [1, 2, 3, 4, 5], handler, concurrency=2)

        assert report.processed == 2
        assert report.skipped == 1
        assert [e["entity_id"] for e in sorted(report.errors, key=lambda e: e["entity_id"])] == ["2", "3"]
        codes = {e["entity_id"]: e["code"] for e in report.errors}
        assert codes == {"2": "configuration_error", "3": "unexpected_error"}
        assert not report.ok
        assert report.to_dict()["finished_at"] is not None
