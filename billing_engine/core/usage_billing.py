"""
Usage billing cycle.

Turns unbilled usage into gateway usage reports. Each (subscription,
feature) pair is handled in two transactions around the gateway call:

1. price the unbilled records, create a PENDING UsageCharge with a stable
   idempotency key and claim the records for it;
2. after the gateway accepted the report, mark the charge REPORTED and the
   records billed.

A crash or timeout between the two leaves a PENDING charge. The next cycle
re-reports it with the same idempotency key before billing anything new,
which the gateway deduplicates.
"""
import hashlib
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.core.exceptions import BillingError, EntityNotFound
from billing_engine.core.locking import SubscriptionLocker, subscription_lock_key
from billing_engine.core.pricing import TieredPricingCalculator
from billing_engine.core.sweeps import SweepReport, run_per_entity
from billing_engine.core.usage_limits import check_usage_limits
from billing_engine.core.usage_ledger import (
    claim_records,
    mark_billed,
    pending_charges,
    subscriptions_with_unbilled_usage,
    unbilled_totals,
)
from billing_engine.database.connection import get_session_factory
from billing_engine.database.models import Subscription, UsageCharge, utcnow
from billing_engine.integrations.gateway import BillingGateway, call_with_timeout
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def usage_idempotency_key(
    subscription_id: uuid.UUID, feature_id: str, record_ids: Sequence[uuid.UUID]
) -> str:
    """Stable key of a usage charge: same records, same key."""
    material = f"{subscription_id}:{feature_id}:" + ",".join(
        sorted(str(record_id) for record_id in record_ids)
    )
    return "usage_" + hashlib.sha256(material.encode()).hexdigest()


class UsageBillingCycle:
    """
    Periodic usage billing.

    Each subscription is checked against its plan's usage limits first.
    Subscriptions without an external billing account are then skipped and
    keep accruing usage until one is linked.
    """

    def __init__(
        self,
        gateway: BillingGateway,
        locker: SubscriptionLocker,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        pricing: Optional[TieredPricingCalculator] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize usage billing cycle.

        Args:
            gateway: Billing gateway receiving usage reports
            locker: Per-subscription locker
            session_factory: Session factory (process-wide one by default)
            pricing: Tier pricing calculator
            settings: Settings (cached settings by default)
        """
        self.gateway = gateway
        self.locker = locker
        self.session_factory = session_factory or get_session_factory()
        self.pricing = pricing or TieredPricingCalculator()
        self.settings = settings or get_settings()

    async def run_billing_cycle(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Bill all unbilled usage.

        Args:
            now: Cycle time (defaults to current UTC time)

        Returns:
            SweepReport: Per-subscription outcome
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            subscription_ids = await subscriptions_with_unbilled_usage(db)

        return await run_per_entity(
            "usage_billing",
            subscription_ids,
            lambda subscription_id: self.bill_subscription(subscription_id, now),
            concurrency=self.settings.sweep_concurrency,
        )

    async def bill_subscription(self, subscription_id: uuid.UUID, now: datetime) -> bool:
        """
        Reconcile pending charges, then bill new usage of one subscription.

        Features are billed independently; when some fail, the others still
        go through and the first failure is re-raised at the end.

        Returns:
            bool: False when the subscription was skipped
        """
        async with self.locker.hold(subscription_lock_key(subscription_id)) as acquired:
            if not acquired:
                return False

            async with self.session_factory() as db:
                subscription = await db.get(Subscription, subscription_id)
                if subscription is None:
                    raise EntityNotFound("Subscription not found", subscription_id=subscription_id)
                await check_usage_limits(
                    db, subscription, self.settings.owner_notification_channels, now
                )
                await db.commit()
                external_ref = subscription.external_customer_ref
                if not external_ref:
                    logger.info(
                        "usage_billing_skipped_no_external_account",
                        subscription_id=str(subscription_id),
                    )
                    return False
                charges = await pending_charges(db, subscription_id)

            if charges:
                logger.info(
                    "usage_charges_reconciling",
                    subscription_id=str(subscription_id),
                    count=len(charges),
                )

            failures: List[BillingError] = []
            for charge in charges:
                await self._report_charge(charge, external_ref, failures)

            new_charges = await self._create_charges(subscription_id, now, failures)
            for charge in new_charges:
                await self._report_charge(charge, external_ref, failures)

            if failures:
                raise failures[0]
            return True

    async def _create_charges(
        self, subscription_id: uuid.UUID, now: datetime, failures: List[BillingError]
    ) -> List[UsageCharge]:
        """Price unbilled usage per feature and persist each PENDING charge with its claim."""
        async with self.session_factory() as db:
            totals = await unbilled_totals(db, subscription_id)

        created: List[UsageCharge] = []
        for feature_id, (quantity, record_ids) in totals.items():
            try:
                async with self.session_factory() as db:
                    amount_cents = await self.pricing.price(db, feature_id, quantity)
                    charge = UsageCharge(
                        subscription_id=subscription_id,
                        feature_id=feature_id,
                        quantity=quantity,
                        amount_cents=amount_cents,
                        idempotency_key=usage_idempotency_key(
                            subscription_id, feature_id, record_ids
                        ),
                        status="PENDING",
                        created_at=now,
                    )
                    db.add(charge)
                    await db.flush()
                    await claim_records(db, charge, record_ids)
                    await db.commit()
            except BillingError as e:
                logger.error(
                    "usage_charge_creation_failed",
                    subscription_id=str(subscription_id),
                    feature_id=feature_id,
                    error_code=e.error_code,
                    error=e.message,
                )
                failures.append(e)
                continue

            logger.info(
                "usage_charge_created",
                subscription_id=str(subscription_id),
                feature_id=feature_id,
                quantity=str(quantity),
                amount_cents=amount_cents,
                records=len(record_ids),
            )
            created.append(charge)
        return created

    async def _report_charge(
        self, charge: UsageCharge, external_ref: str, failures: List[BillingError]
    ) -> None:
        """Report one charge and finalize it; failures leave it PENDING."""
        try:
            external_id = await call_with_timeout(
                self.gateway.report_usage(
                    external_ref,
                    charge.feature_id,
                    charge.quantity,
                    charge.created_at,
                    charge.idempotency_key,
                ),
                self.settings.external_call_timeout_seconds,
                "report_usage",
            )
        except BillingError as e:
            metrics.record_usage_charge(charge.feature_id, "failed", charge.amount_cents)
            logger.warning(
                "usage_report_failed",
                usage_charge_id=str(charge.id),
                feature_id=charge.feature_id,
                error_code=e.error_code,
                error=e.message,
            )
            async with self.session_factory() as db:
                pending = await db.get(UsageCharge, charge.id)
                if pending is not None:
                    pending.error_message = e.message
                    await db.commit()
            failures.append(e)
            return

        async with self.session_factory() as db:
            pending = await db.get(UsageCharge, charge.id, with_for_update=True)
            if pending is None or pending.status != "PENDING":
                return
            billed = await mark_billed(db, pending, external_id)
            await db.commit()

        metrics.record_usage_charge(charge.feature_id, "reported", charge.amount_cents)
        logger.info(
            "usage_charge_reported",
            usage_charge_id=str(charge.id),
            feature_id=charge.feature_id,
            external_usage_record_id=external_id,
            records_billed=billed,
        )
