"""
Usage limit monitoring.

Plans may cap the monthly usage of a feature. As usage of the current
calendar month crosses the plan's warning or critical percentage, or the
limit itself, the account owner is notified once per level per month and the
subscription's ``usage_status`` tracks whether any limit is exceeded.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.outbox import enqueue_notifications
from billing_engine.core.periods import month_window
from billing_engine.core.usage_ledger import aggregate_usage
from billing_engine.database.models import Subscription, UsageLimit, UsageLimitAlert, utcnow
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def usage_levels(usage: Decimal, limit: UsageLimit) -> List[str]:
    """
    Alert levels reached by ``usage``.

    Critical supersedes warning; exceeded is reported on top of either once
    usage is strictly over the limit.
    """
    percentage = usage / Decimal(str(limit.limit_quantity)) * 100
    levels = []
    if percentage >= limit.critical_pct:
        levels.append("CRITICAL")
    elif percentage >= limit.warning_pct:
        levels.append("WARNING")
    if usage > limit.limit_quantity:
        levels.append("EXCEEDED")
    return levels


async def _already_alerted(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature_id: str,
    period_start: datetime,
    level: str,
) -> bool:
    existing = await db.scalar(
        select(UsageLimitAlert.id).where(
            UsageLimitAlert.subscription_id == subscription_id,
            UsageLimitAlert.feature_id == feature_id,
            UsageLimitAlert.period_start == period_start,
            UsageLimitAlert.level == level,
        )
    )
    return existing is not None


async def check_usage_limits(
    db: AsyncSession,
    subscription: Subscription,
    owner_channels: Sequence[str],
    now: Optional[datetime] = None,
) -> List[UsageLimitAlert]:
    """
    Compare this month's usage with the plan limits and queue new alerts.

    Runs in the caller's transaction; alerts and their notifications commit
    with it.

    Args:
        db: Session of the caller's transaction
        subscription: Subscription to check (attached to ``db``)
        owner_channels: Channels reaching the account owner
        now: Check time (defaults to current UTC time)

    Returns:
        List[UsageLimitAlert]: Alerts raised by this check
    """
    if subscription.plan_id is None:
        return []

    now = now or utcnow()
    result = await db.execute(select(UsageLimit).where(UsageLimit.plan_id == subscription.plan_id))
    limits = list(result.scalars().all())
    if not limits:
        return []

    period_start, period_end = month_window(now)
    usage = await aggregate_usage(db, subscription.id, period_start, period_end)

    alerts: List[UsageLimitAlert] = []
    exceeded = False
    for limit in limits:
        used = usage.get(limit.feature_id, Decimal("0"))
        levels = usage_levels(used, limit)
        exceeded = exceeded or "EXCEEDED" in levels

        for level in levels:
            if await _already_alerted(db, subscription.id, limit.feature_id, period_start, level):
                continue

            alert = UsageLimitAlert(
                subscription_id=subscription.id,
                feature_id=limit.feature_id,
                period_start=period_start,
                level=level,
                usage_quantity=used,
                limit_quantity=limit.limit_quantity,
                created_at=now,
            )
            db.add(alert)
            alerts.append(alert)

            enqueue_notifications(
                db,
                subscription.id,
                "subscription",
                list(owner_channels),
                f"usage_{level.lower()}",
                {
                    "subscription_id": subscription.id,
                    "organization_id": subscription.organization_id,
                    "feature_id": limit.feature_id,
                    "usage": used,
                    "limit": limit.limit_quantity,
                    "period_start": period_start,
                },
            )
            metrics.record_usage_limit_alert(level.lower())
            logger.warning(
                "usage_limit_alert",
                subscription_id=str(subscription.id),
                feature_id=limit.feature_id,
                level=level,
                usage=str(used),
                limit=str(limit.limit_quantity),
            )

    usage_status = "EXCEEDED" if exceeded else "NORMAL"
    if subscription.usage_status != usage_status:
        logger.info(
            "subscription_usage_status_changed",
            subscription_id=str(subscription.id),
            old_status=subscription.usage_status,
            new_status=usage_status,
        )
        subscription.usage_status = usage_status

    await db.flush()
    return alerts
