"""
Tiered pricing for metered features.

Two tier-set shapes are supported, never mixed within one feature:

- unit tiers: graduated pricing, every band the quantity spans is charged at
  its own unit rate;
- flat tiers: volume bands, the band containing the total quantity is the
  whole charge.

All amounts are in cents. Unit prices may be fractional cents; callers round
the final charge with ``to_cents``.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.exceptions import ConfigurationError
from billing_engine.database.models import UsageTier

logger = structlog.get_logger(__name__)

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0")


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class Tier:
    """One pricing band ``[from_quantity, to_quantity)``; ``to_quantity=None`` is unbounded."""

    from_quantity: Decimal
    to_quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    flat_price: Optional[Decimal] = None

    @property
    def is_flat(self) -> bool:
        return self.flat_price is not None

    @property
    def is_unbounded(self) -> bool:
        return self.to_quantity is None

    def contains(self, quantity: Decimal) -> bool:
        if quantity < self.from_quantity:
            return False
        return self.to_quantity is None or quantity < self.to_quantity

    @classmethod
    def of(
        cls,
        from_quantity: Number,
        to_quantity: Optional[Number] = None,
        unit_price: Optional[Number] = None,
        flat_price: Optional[Number] = None,
    ) -> "Tier":
        """Build a tier from plain numbers."""
        return cls(
            from_quantity=_to_decimal(from_quantity),
            to_quantity=None if to_quantity is None else _to_decimal(to_quantity),
            unit_price=None if unit_price is None else _to_decimal(unit_price),
            flat_price=None if flat_price is None else _to_decimal(flat_price),
        )

    @classmethod
    def from_row(cls, row: UsageTier) -> "Tier":
        """Build a tier from a ``usage_tiers`` row."""
        return cls.of(
            from_quantity=row.from_quantity,
            to_quantity=row.to_quantity,
            unit_price=row.unit_price,
            flat_price=row.flat_price_cents,
        )


def validate_tier_set(tiers: Iterable[Tier], feature_id: Optional[str] = None) -> List[Tier]:
    """
    Validate a tier set and return it sorted by ``from_quantity``.

    Raises:
        ConfigurationError: empty set, a tier with both or neither price,
            mixed unit/flat tiers, a set not starting at 0, gaps, overlaps,
            or an unbounded tier that is not last.
    """
    ordered = sorted(tiers, key=lambda tier: tier.from_quantity)
    if not ordered:
        raise ConfigurationError("Tier set is empty", feature_id=feature_id)

    for tier in ordered:
        if (tier.unit_price is None) == (tier.flat_price is None):
            raise ConfigurationError(
                "Each tier must set exactly one of unit_price or flat_price",
                feature_id=feature_id,
                from_quantity=tier.from_quantity,
            )
        price = tier.flat_price if tier.is_flat else tier.unit_price
        if price < ZERO:
            raise ConfigurationError(
                "Tier prices must not be negative",
                feature_id=feature_id,
                from_quantity=tier.from_quantity,
            )
        if tier.to_quantity is not None and tier.to_quantity <= tier.from_quantity:
            raise ConfigurationError(
                "Tier upper bound must be greater than its lower bound",
                feature_id=feature_id,
                from_quantity=tier.from_quantity,
            )

    if len({tier.is_flat for tier in ordered}) > 1:
        raise ConfigurationError(
            "Tier set mixes unit-priced and flat-priced tiers", feature_id=feature_id
        )

    if ordered[0].from_quantity != ZERO:
        raise ConfigurationError("Tier set must start at quantity 0", feature_id=feature_id)

    for current, following in zip(ordered, ordered[1:]):
        if current.is_unbounded:
            raise ConfigurationError(
                "Only the last tier may be unbounded", feature_id=feature_id
            )
        if current.to_quantity != following.from_quantity:
            raise ConfigurationError(
                "Tiers must be contiguous and non-overlapping",
                feature_id=feature_id,
                upper_bound=current.to_quantity,
                next_lower_bound=following.from_quantity,
            )

    return ordered


def calculate_charge(
    quantity: Number, tiers: Sequence[Tier], feature_id: Optional[str] = None
) -> Decimal:
    """
    Calculate the charge in cents for ``quantity`` under a tier set.

    Args:
        quantity: Usage quantity (non-negative)
        tiers: Unit tiers or flat tiers of one feature
        feature_id: Feature identifier, used in error context

    Returns:
        Decimal: Charge in (possibly fractional) cents

    Raises:
        ValueError: If quantity is negative
        ConfigurationError: If the tier set is invalid or the quantity lies
            beyond the last bounded tier
    """
    qty = _to_decimal(quantity)
    if qty < ZERO:
        raise ValueError("Quantity must not be negative")

    ordered = validate_tier_set(tiers, feature_id)
    if qty == ZERO:
        return ZERO

    last = ordered[-1]
    if last.is_flat:
        for tier in ordered:
            if tier.contains(qty):
                return tier.flat_price
        raise ConfigurationError(
            "Quantity exceeds the last flat band and no unbounded band exists",
            feature_id=feature_id,
            quantity=qty,
            last_upper_bound=last.to_quantity,
        )

    if last.to_quantity is not None and qty > last.to_quantity:
        raise ConfigurationError(
            "Quantity exceeds the last bounded tier and no unbounded tier exists",
            feature_id=feature_id,
            quantity=qty,
            last_upper_bound=last.to_quantity,
        )

    total = ZERO
    for tier in ordered:
        upper = qty if tier.to_quantity is None else min(qty, tier.to_quantity)
        units = upper - tier.from_quantity
        if units <= ZERO:
            break
        total += units * tier.unit_price
    return total


def to_cents(amount: Decimal) -> int:
    """Round a cent amount half-up to whole cents."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def current_tier(quantity: Number, tiers: Sequence[Tier]) -> Optional[Tier]:
    """Return the tier the quantity currently falls in, or None past the last bounded tier."""
    qty = _to_decimal(quantity)
    ordered = validate_tier_set(tiers)
    for tier in ordered:
        if tier.contains(qty):
            return tier
    last = ordered[-1]
    if not last.is_flat and qty == last.to_quantity:
        return last
    return None


def remaining_until_next_tier(quantity: Number, tiers: Sequence[Tier]) -> Optional[Decimal]:
    """Units left before usage moves into the next tier; None in the last tier."""
    qty = _to_decimal(quantity)
    tier = current_tier(qty, tiers)
    if tier is None or tier.is_unbounded:
        return None
    if tier == validate_tier_set(tiers)[-1]:
        return None
    return tier.to_quantity - qty


async def load_tier_set(
    db: AsyncSession, feature_id: str, version: Optional[int] = None
) -> List[Tier]:
    """
    Load and validate the tier set of a feature.

    Uses the highest version unless ``version`` is given.

    Raises:
        ConfigurationError: If no tiers exist or the set is inconsistent
    """
    if version is None:
        version = await db.scalar(
            select(func.max(UsageTier.version)).where(UsageTier.feature_id == feature_id)
        )
        if version is None:
            raise ConfigurationError("No pricing tiers configured", feature_id=feature_id)

    result = await db.execute(
        select(UsageTier).where(
            UsageTier.feature_id == feature_id,
            UsageTier.version == version,
        )
    )
    rows = list(result.scalars().all())
    if not rows:
        raise ConfigurationError(
            "No pricing tiers configured", feature_id=feature_id, version=version
        )

    tiers = validate_tier_set((Tier.from_row(row) for row in rows), feature_id)
    logger.debug("tier_set_loaded", feature_id=feature_id, version=version, tiers=len(tiers))
    return tiers


class TieredPricingCalculator:
    """Prices a feature's usage with its active tier set."""

    async def price(self, db: AsyncSession, feature_id: str, quantity: Number) -> int:
        """
        Price usage of a feature in whole cents.

        Args:
            db: Database session
            feature_id: Feature identifier
            quantity: Summed usage quantity

        Returns:
            int: Charge in cents
        """
        tiers = await load_tier_set(db, feature_id)
        return to_cents(calculate_charge(quantity, tiers, feature_id))
