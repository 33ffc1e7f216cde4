"""
Failed payment retries with backoff.

A failed payment gets one PENDING RetryStrategy. The retry sweep charges
every strategy whose ``next_retry_date`` has passed: success settles the
payment and its invoice; failure pushes the next date back along the
policy's intervals until they run out, then the subscription goes PAST_DUE
and the account owner and the manual-intervention channel are notified.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.core.exceptions import (
    DataIntegrityViolation,
    EntityNotFound,
    TransientExternalError,
)
from billing_engine.core.locking import SubscriptionLocker, subscription_lock_key
from billing_engine.core.outbox import enqueue_notification, enqueue_notifications
from billing_engine.core.retry_state import (
    RetryPolicy,
    RetryStatus,
    record_failure,
    record_success,
    select_policy,
    start_strategy,
)
from billing_engine.core.sweeps import SweepReport, run_per_entity
from billing_engine.database.connection import get_session_factory
from billing_engine.database.models import (
    Invoice,
    Payment,
    PaymentAttempt,
    RetryStrategy,
    Subscription,
    utcnow,
)
from billing_engine.integrations.gateway import BillingGateway, ChargeResult, call_with_timeout
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _payment_data(payment: Payment, **extra: Any) -> Dict[str, Any]:
    return {
        "subscription_id": payment.subscription_id,
        "payment_id": payment.id,
        "invoice_id": payment.invoice_id,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        **extra,
    }


class DunningRetryScheduler:
    """
    Schedules and executes payment retries.

    Also used by the dunning communicator for the payment retry that a
    dunning step may carry, so both paths write the same PaymentAttempt
    audit trail and settle payments the same way.
    """

    def __init__(
        self,
        gateway: BillingGateway,
        locker: SubscriptionLocker,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize retry scheduler.

        Args:
            gateway: Billing gateway used to charge again
            locker: Per-subscription locker
            session_factory: Session factory (process-wide one by default)
            settings: Settings (cached settings by default)
        """
        self.gateway = gateway
        self.locker = locker
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.default_policy = RetryPolicy.from_hours(
            "default", self.settings.retry_intervals_hours
        )

    @staticmethod
    async def _active_strategy(db: AsyncSession, payment_id: uuid.UUID) -> Optional[RetryStrategy]:
        return await db.scalar(
            select(RetryStrategy).where(
                RetryStrategy.payment_id == payment_id,
                RetryStrategy.status == RetryStatus.PENDING.value,
            )
        )

    async def handle_failed_payment(
        self,
        payment_id: uuid.UUID,
        failure_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RetryStrategy:
        """
        Start retrying a failed payment.

        A payment has at most one active strategy; calling this again while
        one is PENDING returns it unchanged.

        Args:
            payment_id: Failed payment
            failure_code: Gateway decline code, selects the retry policy
            now: Failure time (defaults to current UTC time)

        Returns:
            RetryStrategy: The active strategy

        Raises:
            EntityNotFound: If the payment does not exist
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            payment = await db.get(Payment, payment_id)
            if payment is None:
                raise EntityNotFound("Payment not found", payment_id=payment_id)

            existing = await self._active_strategy(db, payment_id)
            if existing is not None:
                logger.info(
                    "retry_strategy_already_active",
                    payment_id=str(payment_id),
                    retry_strategy_id=str(existing.id),
                )
                return existing

            payment.status = "failed"
            if failure_code:
                payment.failure_code = failure_code
            policy = select_policy(payment.failure_code, self.default_policy)
            strategy = start_strategy(payment.id, policy, now)
            db.add(strategy)

            enqueue_notifications(
                db,
                payment.subscription_id,
                "subscription",
                self.settings.owner_notification_channels,
                "payment_retry_scheduled",
                _payment_data(
                    payment,
                    failure_code=payment.failure_code,
                    next_retry_date=strategy.next_retry_date,
                ),
            )

            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DataIntegrityViolation(
                    "Retry strategy created concurrently", payment_id=payment_id
                ) from e

        logger.info(
            "retry_strategy_created",
            payment_id=str(payment_id),
            retry_strategy_id=str(strategy.id),
            policy=policy.name,
            max_attempts=policy.max_attempts,
            next_retry_date=strategy.next_retry_date.isoformat(),
        )
        return strategy

    async def run_retry_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Execute every due retry.

        Args:
            now: Sweep time (defaults to current UTC time)

        Returns:
            SweepReport: Per-strategy outcome
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(RetryStrategy.id)
                .where(
                    RetryStrategy.status == RetryStatus.PENDING.value,
                    RetryStrategy.next_retry_date <= now,
                )
                .order_by(RetryStrategy.next_retry_date)
            )
            strategy_ids = list(result.scalars().all())

        return await run_per_entity(
            "payment_retries",
            strategy_ids,
            lambda strategy_id: self._execute_retry(strategy_id, now),
            concurrency=self.settings.sweep_concurrency,
        )

    async def _execute_retry(self, strategy_id: uuid.UUID, now: datetime) -> bool:
        async with self.session_factory() as db:
            strategy = await db.get(RetryStrategy, strategy_id)
            if strategy is None:
                return False
            payment = await db.get(Payment, strategy.payment_id)
            if payment is None:
                raise EntityNotFound("Payment not found", payment_id=strategy.payment_id)
            subscription_id = payment.subscription_id

        async with self.locker.hold(subscription_lock_key(subscription_id)) as acquired:
            if not acquired:
                return False

            async with self.session_factory() as db:
                strategy = await db.get(RetryStrategy, strategy_id)
                if (
                    strategy.status != RetryStatus.PENDING.value
                    or strategy.next_retry_date is None
                    or strategy.next_retry_date > now
                ):
                    return False

                payment = await db.get(Payment, strategy.payment_id)
                if payment.status == "succeeded":
                    # Settled elsewhere (dunning retry, customer action)
                    record_success(strategy)
                    await db.commit()
                    logger.info("retry_strategy_closed_already_paid", payment_id=str(payment.id))
                    return True

                attempt = strategy.attempts_made + 1
                result = await self.charge_payment(db, payment, attempt, now, strategy)

                if result.success:
                    await self.settle_payment(db, payment, now)
                    outcome = "succeeded"
                else:
                    payment.failure_code = result.code or payment.failure_code
                    if record_failure(strategy, now):
                        subscription = await db.get(Subscription, payment.subscription_id)
                        self._escalate(db, subscription, payment, result)
                        outcome = "exhausted"
                    else:
                        enqueue_notifications(
                            db,
                            payment.subscription_id,
                            "subscription",
                            self.settings.owner_notification_channels,
                            "payment_retry_failed",
                            _payment_data(
                                payment,
                                attempt=attempt,
                                failure_code=result.code,
                                next_retry_date=strategy.next_retry_date,
                            ),
                        )
                        outcome = "rescheduled"

                await db.commit()

        metrics.record_payment_retry(strategy.policy, outcome)
        logger.info(
            "payment_retry_executed",
            retry_strategy_id=str(strategy_id),
            payment_id=str(strategy.payment_id),
            attempt=attempt,
            outcome=outcome,
            failure_code=result.code,
        )
        return True

    async def charge_payment(
        self,
        db: AsyncSession,
        payment: Payment,
        attempt_number: int,
        now: datetime,
        strategy: Optional[RetryStrategy] = None,
    ) -> ChargeResult:
        """
        Charge a payment again and record the attempt in ``db``.

        A timeout or transient gateway error is a failed attempt, not an error.

        Returns:
            ChargeResult: Outcome of the attempt
        """
        if not payment.external_payment_ref:
            result = ChargeResult(
                success=False,
                code="missing_payment_reference",
                message="Payment has no gateway reference",
            )
        else:
            try:
                result = await call_with_timeout(
                    self.gateway.charge_again(payment.external_payment_ref),
                    self.settings.external_call_timeout_seconds,
                    "charge_again",
                )
            except TransientExternalError as e:
                result = ChargeResult(success=False, code=e.error_code, message=e.message)

        db.add(
            PaymentAttempt(
                subscription_id=payment.subscription_id,
                invoice_id=payment.invoice_id,
                payment_id=payment.id,
                retry_strategy_id=strategy.id if strategy is not None else None,
                attempt_number=attempt_number,
                amount_cents=payment.amount_cents,
                status="succeeded" if result.success else "failed",
                failure_code=None if result.success else result.code,
                failure_message=None if result.success else result.message,
                scheduled_for=strategy.next_retry_date if strategy is not None else None,
                processed_at=now,
            )
        )
        return result

    async def settle_payment(self, db: AsyncSession, payment: Payment, now: datetime) -> None:
        """Mark a payment succeeded, pay its invoice and close its active retry strategy."""
        payment.status = "succeeded"
        payment.failure_code = None

        if payment.invoice_id is not None:
            invoice = await db.get(Invoice, payment.invoice_id)
            if invoice is not None and invoice.status == "open":
                invoice.status = "paid"
                invoice.payment_id = payment.id

        strategy = await self._active_strategy(db, payment.id)
        if strategy is not None and strategy.status == RetryStatus.PENDING.value:
            record_success(strategy)

        enqueue_notifications(
            db,
            payment.subscription_id,
            "subscription",
            self.settings.owner_notification_channels,
            "payment_recovered",
            _payment_data(payment, recovered_at=now),
        )

    def _escalate(
        self,
        db: AsyncSession,
        subscription: Optional[Subscription],
        payment: Payment,
        result: ChargeResult,
    ) -> None:
        """Retries exhausted: subscription PAST_DUE, owner and manual-intervention queue notified."""
        if subscription is not None and subscription.status == "ACTIVE":
            subscription.status = "PAST_DUE"

        data = _payment_data(payment, failure_code=result.code, failure_message=result.message)
        enqueue_notifications(
            db,
            payment.subscription_id,
            "subscription",
            self.settings.owner_notification_channels,
            "payment_retries_exhausted",
            data,
        )
        enqueue_notification(
            db,
            payment.id,
            "payment",
            self.settings.escalation_channel,
            "payment_manual_intervention",
            data,
        )
        logger.warning(
            "payment_escalated",
            payment_id=str(payment.id),
            subscription_id=str(payment.subscription_id),
            failure_code=result.code,
        )
