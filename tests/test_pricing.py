"""
Unit tests for tiered pricing.
"""
from decimal import Decimal
from typing import Any

import pytest

from billing_engine.core.exceptions import ConfigurationError
from billing_engine.core.pricing import (
    Tier,
    TieredPricingCalculator,
    calculate_charge,
    current_tier,
    load_tier_set,
    remaining_until_next_tier,
    to_cents,
    validate_tier_set,
)
from billing_engine.database.models import UsageTier

UNIT_TIERS = [
    Tier.of(0, 50, unit_price=10),
    Tier.of(50, 200, unit_price=5),
    Tier.of(200, None, unit_price=2),
]

FLAT_TIERS = [
    Tier.of(0, 10, flat_price=1000),
    Tier.of(10, 50, flat_price=2500),
    Tier.of(50, 200, flat_price=5000),
]


class TestCalculateCharge:
    """Test suite for calculate_charge."""

    @pytest.mark.unit
    def test_graduated_unit_tiers(self) -> None:
        """100 units: 50 at 10c plus 50 at 5c."""
        assert calculate_charge(100, UNIT_TIERS) == Decimal("750")

    @pytest.mark.unit
    def test_graduated_into_unbounded_tier(self) -> None:
        """250 units: 500 + 750 + 100."""
        assert calculate_charge(250, UNIT_TIERS) == Decimal("1350")

    @pytest.mark.unit
    def test_quantity_on_tier_boundary(self) -> None:
        assert calculate_charge(50, UNIT_TIERS) == Decimal("500")
        assert calculate_charge(200, UNIT_TIERS) == Decimal("1250")

    @pytest.mark.unit
    def test_tier_order_does_not_matter(self) -> None:
        assert calculate_charge(100, list(reversed(UNIT_TIERS))) == Decimal("750")

    @pytest.mark.unit
    def test_flat_band_containing_quantity(self) -> None:
        assert calculate_charge(120, FLAT_TIERS) == Decimal("5000")
        assert calculate_charge(5, FLAT_TIERS) == Decimal("1000")
        assert calculate_charge(10, FLAT_TIERS) == Decimal("2500")

    @pytest.mark.unit
    def test_zero_quantity_is_free(self) -> None:
        assert calculate_charge(0, UNIT_TIERS) == Decimal("0")
        assert calculate_charge(0, FLAT_TIERS) == Decimal("0")

    @pytest.mark.unit
    def test_negative_quantity_rejected(self) -> None:
        with pytest.raises(ValueError, match="must not be negative"):
            calculate_charge(-1, UNIT_TIERS)

    @pytest.mark.unit
    def test_fractional_unit_prices(self) -> None:
        tiers = [Tier.of(0, None, unit_price="0.15")]
        amount = calculate_charge(1001, tiers)
        assert amount == Decimal("150.15")
        assert to_cents(amount) == 150

    @pytest.mark.unit
    def test_quantity_beyond_last_bounded_unit_tier(self) -> None:
        tiers = [Tier.of(0, 100, unit_price=1)]
        assert calculate_charge(100, tiers) == Decimal("100")
        with pytest.raises(ConfigurationError, match="exceeds the last bounded tier"):
            calculate_charge(101, tiers)

    @pytest.mark.unit
    def test_quantity_beyond_last_flat_band(self) -> None:
        with pytest.raises(ConfigurationError, match="exceeds the last flat band"):
            calculate_charge(200, FLAT_TIERS)

    @pytest.mark.unit
    def test_to_cents_rounds_half_up(self) -> None:
        assert to_cents(Decimal("10.5")) == 11
        assert to_cents(Decimal("10.49")) == 10


class TestValidateTierSet:
    """Test suite for tier set validation."""

    @pytest.mark.unit
    def test_valid_set_is_sorted(self) -> None:
        ordered = validate_tier_set(reversed(UNIT_TIERS))
        assert [t.from_quantity for t in ordered] == [0, 50, 200]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "tiers, message",
        [
            ([], "empty"),
            ([Tier.of(0, 10, unit_price=1, flat_price=100)], "exactly one"),
            ([Tier.of(0, 10)], "exactly one"),
            ([Tier.of(0, 10, unit_price=-1)], "negative"),
            ([Tier.of(0, 10, unit_price=1), Tier.of(10, None, flat_price=100)], "mixes"),
            ([Tier.of(5, None, unit_price=1)], "start at quantity 0"),
            ([Tier.of(0, 10, unit_price=1), Tier.of(20, None, unit_price=1)], "contiguous"),
            ([Tier.of(0, 10, unit_price=1), Tier.of(5, None, unit_price=1)], "contiguous"),
            ([Tier.of(0, None, unit_price=1), Tier.of(10, None, unit_price=1)], "last may be unbounded"),
            ([Tier.of(0, 0, unit_price=1)], "greater than its lower bound"),
        ],
    )
    def test_invalid_sets_rejected(self, tiers: Any, message: str) -> None:
        with pytest.raises(ConfigurationError, match=message):
            validate_tier_set(tiers)

    @pytest.mark.unit
    def test_error_carries_feature(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            validate_tier_set([], feature_id="storage_gb")
        assert exc_info.value.context["feature_id"] == "storage_gb"
        assert exc_info.value.to_dict()["code"] == "configuration_error"


class TestTierPosition:
    """Test suite for current tier lookups."""

    @pytest.mark.unit
    def test_current_tier(self) -> None:
        assert current_tier(0, UNIT_TIERS) == UNIT_TIERS[0]
        assert current_tier(75, UNIT_TIERS) == UNIT_TIERS[1]
        assert current_tier(10_000, UNIT_TIERS) == UNIT_TIERS[2]

    @pytest.mark.unit
    def test_remaining_until_next_tier(self) -> None:
        assert remaining_until_next_tier(30, UNIT_TIERS) == Decimal("20")
        assert remaining_until_next_tier(199, UNIT_TIERS) == Decimal("1")
        assert remaining_until_next_tier(500, UNIT_TIERS) is None

    @pytest.mark.unit
    def test_remaining_in_last_bounded_tier(self) -> None:
        tiers = [Tier.of(0, 10, unit_price=1), Tier.of(10, 20, unit_price=1)]
        assert remaining_until_next_tier(15, tiers) is None
        assert current_tier(25, tiers) is None


class TestLoadTierSet:
    """Test suite for loading tier sets from the database."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_highest_version_is_active(self, add: Any, session_factory: Any) -> None:
        await add(
            UsageTier(feature_id="seats", version=1, from_quantity=Decimal("0"),
                      to_quantity=None, unit_price=Decimal("100")),
            UsageTier(feature_id="seats", version=2, from_quantity=Decimal("0"),
                      to_quantity=None, unit_price=Decimal("80")),
        )

        async with session_factory() as db:
            tiers = await load_tier_set(db, "seats")
            old_tiers = await load_tier_set(db, "seats", version=1)
            charge = await TieredPricingCalculator().price(db, "seats", 3)

        assert [t.unit_price for t in tiers] == [Decimal("80")]
        assert [t.unit_price for t in old_tiers] == [Decimal("100")]
        assert charge == 240

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_feature(self, session_factory: Any) -> None:
        async with session_factory() as db:
            with pytest.raises(ConfigurationError, match="No pricing tiers"):
                await load_tier_set(db, "unknown_feature")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mixed_set_rejected_at_load(self, add: Any, session_factory: Any) -> None:
        await add(
            UsageTier(feature_id="mixed", version=1, from_quantity=Decimal("0"),
                      to_quantity=Decimal("10"), unit_price=Decimal("1")),
            UsageTier(feature_id="mixed", version=1, from_quantity=Decimal("10"),
                      to_quantity=None, flat_price_cents=500),
        )
        async with session_factory() as db:
            with pytest.raises(ConfigurationError, match="mixes"):
                await load_tier_set(db, "mixed")
