"""
Calendar-based dunning communications.

Each organization has one active dunning config: an ordered list of steps
keyed by days past due. For every open, overdue invoice the sweep executes
each step whose threshold has been reached and that has no DunningLog yet,
in ascending order. A step may first retry the payment; a successful retry
settles the invoice and ends dunning for it.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.core.exceptions import ConfigurationError, EntityNotFound
from billing_engine.core.locking import SubscriptionLocker, subscription_lock_key
from billing_engine.core.outbox import enqueue_notification, enqueue_notifications
from billing_engine.core.periods import days_past_due
from billing_engine.core.retry_scheduler import DunningRetryScheduler
from billing_engine.core.schemas import (
    DEFAULT_DUNNING_STEPS,
    CancelStep,
    DunningStep,
    DunningSteps,
    EmailStep,
    GracePeriodStep,
    SmsStep,
)
from billing_engine.core.sweeps import SweepReport, run_per_entity
from billing_engine.database.connection import get_session_factory
from billing_engine.database.models import (
    DunningConfig,
    DunningLog,
    Invoice,
    Payment,
    PaymentAttempt,
    Subscription,
    utcnow,
)
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def parse_steps(steps: Sequence[Dict[str, Any]]) -> List[DunningStep]:
    """
    Validate a step list and return it in ascending threshold order.

    Raises:
        ConfigurationError: If a step is malformed or thresholds repeat
    """
    try:
        return DunningSteps(steps=list(steps)).steps
    except ValidationError as e:
        raise ConfigurationError("Invalid dunning steps", errors=e.errors()) from e


@dataclass
class DunningStatus:
    """Dunning position of a subscription."""

    status: str  # CURRENT, PAST_DUE, CANCELED
    days_past_due: int = 0
    invoice_id: Optional[uuid.UUID] = None
    grace_period_until: Optional[datetime] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def last_action(self) -> Optional[Dict[str, Any]]:
        return self.history[0] if self.history else None


class DunningCommunicator:
    """Runs dunning steps for overdue invoices."""

    def __init__(
        self,
        retry_scheduler: DunningRetryScheduler,
        locker: SubscriptionLocker,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize dunning communicator.

        Args:
            retry_scheduler: Executes the payment retry of a step
            locker: Per-subscription locker
            session_factory: Session factory (process-wide one by default)
            settings: Settings (cached settings by default)
        """
        self.retry_scheduler = retry_scheduler
        self.locker = locker
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.default_steps = parse_steps(DEFAULT_DUNNING_STEPS)

    async def activate_dunning_config(
        self, organization_id: str, name: str, steps: Sequence[Dict[str, Any]]
    ) -> DunningConfig:
        """
        Store a dunning config as the organization's only active one.

        Raises:
            ConfigurationError: If the steps are invalid
        """
        parsed = parse_steps(steps)
        async with self.session_factory() as db:
            await db.execute(
                update(DunningConfig)
                .where(
                    DunningConfig.organization_id == organization_id,
                    DunningConfig.is_active.is_(True),
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            config = DunningConfig(
                organization_id=organization_id,
                name=name,
                steps=[step.model_dump() for step in parsed],
                is_active=True,
            )
            db.add(config)
            await db.commit()

        logger.info(
            "dunning_config_activated",
            organization_id=organization_id,
            config_id=str(config.id),
            steps=[step.days_past_due for step in parsed],
        )
        return config

    async def _steps_for(self, db: AsyncSession, organization_id: str) -> List[DunningStep]:
        config = await db.scalar(
            select(DunningConfig).where(
                DunningConfig.organization_id == organization_id,
                DunningConfig.is_active.is_(True),
            )
        )
        if config is None:
            return self.default_steps
        return parse_steps(config.steps)

    async def run_dunning_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Execute due dunning steps for all overdue open invoices.

        Args:
            now: Sweep time (defaults to current UTC time)

        Returns:
            SweepReport: Per-invoice outcome
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Invoice.id)
                .where(Invoice.status == "open", Invoice.due_date < now)
                .order_by(Invoice.due_date)
            )
            invoice_ids = list(result.scalars().all())

        return await run_per_entity(
            "dunning",
            invoice_ids,
            lambda invoice_id: self._process_invoice(invoice_id, now),
            concurrency=self.settings.sweep_concurrency,
        )

    async def _process_invoice(self, invoice_id: uuid.UUID, now: datetime) -> bool:
        async with self.session_factory() as db:
            invoice = await db.get(Invoice, invoice_id)
            if invoice is None:
                return False
            subscription_id = invoice.subscription_id

        async with self.locker.hold(subscription_lock_key(subscription_id)) as acquired:
            if not acquired:
                return False

            async with self.session_factory() as db:
                invoice = await db.get(Invoice, invoice_id)
                subscription = await db.get(Subscription, subscription_id)
                if subscription is None:
                    raise EntityNotFound("Subscription not found", subscription_id=subscription_id)
                if invoice.status != "open" or subscription.status == "CANCELED":
                    return False

                overdue_days = days_past_due(invoice.due_date, now)
                steps = await self._steps_for(db, subscription.organization_id)
                result = await db.execute(
                    select(DunningLog.step_days_past_due).where(DunningLog.invoice_id == invoice_id)
                )
                executed = set(result.scalars().all())
                payment = await self._invoice_payment(db, invoice)

                fired = 0
                for step in steps:
                    if step.days_past_due > overdue_days:
                        break
                    if step.days_past_due in executed:
                        continue

                    settled = await self._execute_step(
                        db, step, invoice, subscription, payment, overdue_days, now
                    )
                    try:
                        await db.commit()
                    except IntegrityError:
                        # Logged by a concurrent run
                        await db.rollback()
                        logger.info(
                            "dunning_step_already_logged",
                            invoice_id=str(invoice_id),
                            step=step.days_past_due,
                        )
                        return False

                    fired += 1
                    metrics.record_dunning_step(step.action)
                    if settled:
                        break

        return fired > 0

    @staticmethod
    async def _invoice_payment(db: AsyncSession, invoice: Invoice) -> Optional[Payment]:
        if invoice.payment_id is not None:
            payment = await db.get(Payment, invoice.payment_id)
            if payment is not None:
                return payment
        return await db.scalar(
            select(Payment)
            .where(Payment.invoice_id == invoice.id)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )

    async def _execute_step(
        self,
        db: AsyncSession,
        step: DunningStep,
        invoice: Invoice,
        subscription: Subscription,
        payment: Optional[Payment],
        overdue_days: int,
        now: datetime,
    ) -> bool:
        """
        Execute one step in ``db``'s transaction.

        Returns:
            bool: True when the step's payment retry settled the invoice
        """
        retry_attempted = retry_succeeded = False
        if step.retry_payment and payment is not None and payment.status != "succeeded":
            attempt_number = await self._next_attempt_number(db, payment)
            result = await self.retry_scheduler.charge_payment(db, payment, attempt_number, now)
            retry_attempted = True
            retry_succeeded = result.success
            if result.success:
                await self.retry_scheduler.settle_payment(db, payment, now)
            else:
                payment.failure_code = result.code or payment.failure_code

        db.add(
            DunningLog(
                invoice_id=invoice.id,
                subscription_id=subscription.id,
                step_days_past_due=step.days_past_due,
                action=step.action,
                days_past_due=overdue_days,
                retry_attempted=retry_attempted,
                retry_succeeded=retry_succeeded,
                executed_at=now,
            )
        )

        logger.info(
            "dunning_step_executed",
            invoice_id=str(invoice.id),
            step=step.days_past_due,
            action=step.action,
            days_past_due=overdue_days,
            retry_attempted=retry_attempted,
            retry_succeeded=retry_succeeded,
        )
        if retry_succeeded:
            return True

        data = {
            "subscription_id": subscription.id,
            "invoice_id": invoice.id,
            "amount_cents": invoice.amount_cents,
            "currency": invoice.currency,
            "days_past_due": overdue_days,
            "message": step.message,
        }

        if isinstance(step, (EmailStep, SmsStep)):
            enqueue_notification(
                db, subscription.id, "subscription", step.action, step.template_key, data
            )
        elif isinstance(step, GracePeriodStep):
            subscription.grace_period_until = now + timedelta(days=step.grace_days)
            enqueue_notifications(
                db,
                subscription.id,
                "subscription",
                self.settings.owner_notification_channels,
                "dunning_grace_period",
                {**data, "grace_period_until": subscription.grace_period_until},
            )
        elif isinstance(step, CancelStep):
            subscription.status = "CANCELED"
            enqueue_notifications(
                db,
                subscription.id,
                "subscription",
                self.settings.owner_notification_channels,
                "subscription_canceled",
                data,
            )
            logger.warning(
                "subscription_canceled_by_dunning",
                subscription_id=str(subscription.id),
                invoice_id=str(invoice.id),
            )
        return False

    @staticmethod
    async def _next_attempt_number(db: AsyncSession, payment: Payment) -> int:
        count = await db.scalar(
            select(func.count()).select_from(PaymentAttempt).where(
                PaymentAttempt.payment_id == payment.id
            )
        )
        return int(count or 0) + 1

    async def get_dunning_status(
        self, subscription_id: uuid.UUID, now: Optional[datetime] = None
    ) -> DunningStatus:
        """
        Dunning position of a subscription and its executed steps, newest first.

        Raises:
            EntityNotFound: If the subscription does not exist
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise EntityNotFound("Subscription not found", subscription_id=subscription_id)

            result = await db.execute(
                select(DunningLog)
                .where(DunningLog.subscription_id == subscription_id)
                .order_by(DunningLog.executed_at.desc(), DunningLog.step_days_past_due.desc())
            )
            history = [
                {
                    "invoice_id": log.invoice_id,
                    "step_days_past_due": log.step_days_past_due,
                    "action": log.action,
                    "days_past_due": log.days_past_due,
                    "retry_attempted": log.retry_attempted,
                    "retry_succeeded": log.retry_succeeded,
                    "executed_at": log.executed_at,
                }
                for log in result.scalars().all()
            ]

            invoice = await db.scalar(
                select(Invoice)
                .where(
                    Invoice.subscription_id == subscription_id,
                    Invoice.status == "open",
                    Invoice.due_date < now,
                )
                .order_by(Invoice.due_date)
                .limit(1)
            )

        if subscription.status == "CANCELED":
            status = "CANCELED"
        elif invoice is not None:
            status = "PAST_DUE"
        else:
            return DunningStatus(status="CURRENT", history=history)

        return DunningStatus(
            status=status,
            days_past_due=days_past_due(invoice.due_date, now) if invoice is not None else 0,
            invoice_id=invoice.id if invoice is not None else None,
            grace_period_until=subscription.grace_period_until,
            history=history,
        )
