"""
Usage ledger: append-only store of metered usage.

A record moves through three states, all derived from its columns:

- unbilled: ``billed = false`` and no ``usage_charge_id``
- claimed:  ``billed = false`` with a PENDING usage charge attached
- billed:   ``billed = true``, the charge was accepted by the gateway
"""
import uuid
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple, Union

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.exceptions import DataIntegrityViolation
from billing_engine.database.models import UsageCharge, UsageRecord, utcnow

logger = structlog.get_logger(__name__)

UnbilledTotals = Dict[str, Tuple[Decimal, List[uuid.UUID]]]


async def record_usage(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature_id: str,
    quantity: Union[Decimal, int, str],
    recorded_at: Optional[datetime] = None,
) -> UsageRecord:
    """
    Append a usage record.

    Raises:
        ValueError: If quantity is negative
    """
    qty = Decimal(str(quantity))
    if qty < 0:
        raise ValueError("Usage quantity must not be negative")

    record = UsageRecord(
        subscription_id=subscription_id,
        feature_id=feature_id,
        quantity=qty,
        recorded_at=recorded_at or utcnow(),
        billed=False,
        processed=False,
    )
    db.add(record)
    await db.flush()

    logger.debug(
        "usage_recorded",
        subscription_id=str(subscription_id),
        feature_id=feature_id,
        quantity=str(qty),
    )
    return record


async def aggregate_usage(
    db: AsyncSession, subscription_id: uuid.UUID, start: datetime, end: datetime
) -> Dict[str, Decimal]:
    """Sum usage per feature over ``[start, end)``, billed or not."""
    result = await db.execute(
        select(UsageRecord.feature_id, func.sum(UsageRecord.quantity))
        .where(
            UsageRecord.subscription_id == subscription_id,
            UsageRecord.recorded_at >= start,
            UsageRecord.recorded_at < end,
        )
        .group_by(UsageRecord.feature_id)
    )
    return {feature_id: Decimal(str(total)) for feature_id, total in result.all()}


async def unbilled_totals(db: AsyncSession, subscription_id: uuid.UUID) -> UnbilledTotals:
    """
    Group unbilled, unclaimed usage of a subscription by feature.

    Returns:
        Dict mapping feature id to (summed quantity, contributing record ids)
    """
    result = await db.execute(
        select(UsageRecord.id, UsageRecord.feature_id, UsageRecord.quantity)
        .where(
            UsageRecord.subscription_id == subscription_id,
            UsageRecord.billed.is_(False),
            UsageRecord.usage_charge_id.is_(None),
        )
        .order_by(UsageRecord.feature_id, UsageRecord.recorded_at)
    )

    totals: UnbilledTotals = OrderedDict()
    for record_id, feature_id, quantity in result.all():
        total, ids = totals.get(feature_id, (Decimal("0"), []))
        ids.append(record_id)
        totals[feature_id] = (total + Decimal(str(quantity)), ids)
    return totals


async def claim_records(
    db: AsyncSession, charge: UsageCharge, record_ids: Sequence[uuid.UUID]
) -> None:
    """
    Attach unbilled records to a PENDING charge.

    Raises:
        DataIntegrityViolation: If any record was billed or claimed meanwhile
    """
    result = await db.execute(
        update(UsageRecord)
        .where(
            UsageRecord.id.in_(list(record_ids)),
            UsageRecord.billed.is_(False),
            UsageRecord.usage_charge_id.is_(None),
        )
        .values(usage_charge_id=charge.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(record_ids):
        raise DataIntegrityViolation(
            "Usage records were claimed by another charge",
            usage_charge_id=charge.id,
            expected=len(record_ids),
            claimed=result.rowcount,
        )


async def mark_billed(
    db: AsyncSession,
    charge: UsageCharge,
    external_id: str,
    reported_at: Optional[datetime] = None,
) -> int:
    """
    Finalize a reported charge: the charge becomes REPORTED and every record
    it claimed becomes billed, in the caller's transaction.

    Returns:
        int: Number of records flipped to billed
    """
    charge.status = "REPORTED"
    charge.external_usage_record_id = external_id
    charge.reported_at = reported_at or utcnow()
    charge.error_message = None

    result = await db.execute(
        update(UsageRecord)
        .where(UsageRecord.usage_charge_id == charge.id, UsageRecord.billed.is_(False))
        .values(billed=True, external_usage_record_id=external_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def pending_charges(db: AsyncSession, subscription_id: uuid.UUID) -> List[UsageCharge]:
    """PENDING charges of a subscription left by an interrupted cycle."""
    result = await db.execute(
        select(UsageCharge)
        .where(
            UsageCharge.subscription_id == subscription_id,
            UsageCharge.status == "PENDING",
        )
        .order_by(UsageCharge.created_at)
    )
    return list(result.scalars().all())


async def subscriptions_with_unbilled_usage(db: AsyncSession) -> List[uuid.UUID]:
    """Subscriptions holding unbilled usage, claimed or not."""
    result = await db.execute(
        select(UsageRecord.subscription_id)
        .where(UsageRecord.billed.is_(False))
        .distinct()
    )
    return list(result.scalars().all())
