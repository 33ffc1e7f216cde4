"""
Revenue recognition.

A charge is recognized according to the recognition rule of its plan:

- IMMEDIATE: one RECOGNIZED entry for the whole amount
- STRAIGHT_LINE: one DEFERRED entry carrying a monthly schedule; the
  deferred sweep books one RECOGNIZED installment per elapsed month
- USAGE_BASED: unprocessed usage times the rule's unit price, booked once
- MILESTONE: a share of the charge per milestone, once its criteria are met

For every DEFERRED entry ``deferred_amount_cents`` equals ``amount_cents``
minus the installments booked against it. The sweep checks this before
touching an entry and halts the entry when it does not hold.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.core.exceptions import (
    ConfigurationError,
    DataIntegrityViolation,
    EntityNotFound,
)
from billing_engine.core.outbox import enqueue_notification
from billing_engine.core.periods import add_months, months_elapsed
from billing_engine.core.pricing import to_cents
from billing_engine.core.schemas import (
    ImmediateRule,
    Milestone,
    MilestoneRule,
    RecognitionRule,
    ScheduleRow,
    StraightLineRule,
    UsageBasedRule,
    recognition_rule_adapter,
    schedule_adapter,
)
from billing_engine.core.sweeps import SweepReport, run_per_entity
from billing_engine.database.connection import get_session_factory
from billing_engine.database.models import (
    Plan,
    RevenueLedgerEntry,
    RevenueRecognitionRule,
    Subscription,
    UsageRecord,
    utcnow,
)
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChargeEvent:
    """A billed amount to be recognized for a subscription."""

    subscription_id: uuid.UUID
    amount_cents: int
    currency: str = "USD"


@dataclass(frozen=True)
class DeferredBalance:
    """Conservation terms of a DEFERRED entry."""

    entry_id: uuid.UUID
    amount_cents: int
    recognized_cents: int
    deferred_amount_cents: int
    recognized_periods: frozenset

    @property
    def consistent(self) -> bool:
        return self.amount_cents - self.recognized_cents == self.deferred_amount_cents


def straight_line_schedule(amount_cents: int, period_months: int) -> List[ScheduleRow]:
    """Equal monthly installments; the rounding remainder goes to the last one."""
    base, remainder = divmod(amount_cents, period_months)
    rows = [ScheduleRow(period_index=i, amount_cents=base) for i in range(1, period_months + 1)]
    rows[-1] = ScheduleRow(period_index=period_months, amount_cents=base + remainder)
    return rows


def milestone_shares(amount_cents: int, milestones: Sequence[Milestone]) -> Dict[str, int]:
    """
    Whole-cent share of each milestone.

    Shares are differences of the rounded running total, so the milestone that
    completes 100% takes the rounding remainder and the shares sum to the charge.
    """
    shares: Dict[str, int] = {}
    cumulative = Decimal("0")
    previous_cents = 0
    for milestone in milestones:
        cumulative += Decimal(str(milestone.percentage))
        running_cents = to_cents(Decimal(amount_cents) * cumulative / 100)
        shares[milestone.name] = running_cents - previous_cents
        previous_cents = running_cents
    return shares


class MilestoneEvaluator(ABC):
    """Decides whether a milestone's criteria are met for a subscription."""

    @abstractmethod
    async def is_met(
        self, db: AsyncSession, subscription_id: uuid.UUID, milestone: Milestone, now: datetime
    ) -> bool:
        ...


class CriteriaMilestoneEvaluator(MilestoneEvaluator):
    """
    Evaluates the built-in criteria keys; every key present must hold.

    - ``days_since_start``: the subscription is at least this many days old
    - ``feature_id`` + ``min_quantity``: total recorded usage of the feature
      reached the quantity

    A milestone without criteria is never met automatically.
    """

    async def is_met(
        self, db: AsyncSession, subscription_id: uuid.UUID, milestone: Milestone, now: datetime
    ) -> bool:
        criteria = milestone.criteria
        if not criteria:
            return False

        if "days_since_start" in criteria:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                return False
            if now - subscription.created_at < timedelta(days=int(criteria["days_since_start"])):
                return False

        if "min_quantity" in criteria:
            feature_id = criteria.get("feature_id")
            if not feature_id:
                raise ConfigurationError(
                    "Milestone usage criteria need a feature_id", milestone=milestone.name
                )
            total = await db.scalar(
                select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
                    UsageRecord.subscription_id == subscription_id,
                    UsageRecord.feature_id == feature_id,
                )
            )
            if Decimal(str(total)) < Decimal(str(criteria["min_quantity"])):
                return False

        return True


class RevenueRecognitionEngine:
    """Books revenue ledger entries for charges and runs the deferred sweep."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        milestone_evaluator: Optional[MilestoneEvaluator] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.milestone_evaluator = milestone_evaluator or CriteriaMilestoneEvaluator()
        self.settings = settings or get_settings()

    async def recognize(
        self,
        event: ChargeEvent,
        rule: RecognitionRule,
        now: Optional[datetime] = None,
    ) -> List[RevenueLedgerEntry]:
        """
        Recognize a charge under a rule, in one transaction.

        Args:
            event: The charge to recognize
            rule: Recognition rule variant
            now: Recognition time (defaults to current UTC time)

        Returns:
            List[RevenueLedgerEntry]: Entries created (may be empty)

        Raises:
            DataIntegrityViolation: If usage or a milestone was recognized concurrently
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            try:
                entries = await self._recognize(db, event, rule, now)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DataIntegrityViolation(
                    "Duplicate revenue recognition",
                    subscription_id=event.subscription_id,
                    rule=rule.type,
                ) from e
            except Exception:
                await db.rollback()
                raise

        for entry in entries:
            if entry.status == "RECOGNIZED":
                metrics.record_revenue_recognized(entry.recognition_type, entry.amount_cents)
            else:
                metrics.record_revenue_deferred(entry.amount_cents)

        logger.info(
            "revenue_recognized",
            subscription_id=str(event.subscription_id),
            rule=rule.type,
            entries=len(entries),
        )
        return entries

    async def _recognize(
        self, db: AsyncSession, event: ChargeEvent, rule: RecognitionRule, now: datetime
    ) -> List[RevenueLedgerEntry]:
        if isinstance(rule, ImmediateRule):
            return [self._immediate(db, event, now)]
        if isinstance(rule, StraightLineRule):
            return [self._straight_line(db, event, rule, now)]
        if isinstance(rule, UsageBasedRule):
            entry = await self._usage_based(db, event, rule, now)
            return [entry] if entry is not None else []
        if isinstance(rule, MilestoneRule):
            return await self._milestones(db, event, rule, now)
        raise ConfigurationError("Unsupported recognition rule", rule=type(rule).__name__)

    def _immediate(self, db: AsyncSession, event: ChargeEvent, now: datetime) -> RevenueLedgerEntry:
        entry = RevenueLedgerEntry(
            subscription_id=event.subscription_id,
            amount_cents=event.amount_cents,
            currency=event.currency,
            type="RECURRING",
            status="RECOGNIZED",
            recognition_type="IMMEDIATE",
            recognized_date=now,
        )
        db.add(entry)
        return entry

    def _straight_line(
        self, db: AsyncSession, event: ChargeEvent, rule: StraightLineRule, now: datetime
    ) -> RevenueLedgerEntry:
        schedule = straight_line_schedule(event.amount_cents, rule.period_months)
        entry = RevenueLedgerEntry(
            subscription_id=event.subscription_id,
            amount_cents=event.amount_cents,
            currency=event.currency,
            type="RECURRING",
            status="DEFERRED",
            recognition_type="STRAIGHT_LINE",
            recognized_date=now,
            deferred_amount_cents=event.amount_cents,
            deferred_until=add_months(now, rule.period_months),
            next_recognition_at=add_months(now, 1),
            recognition_schedule=[row.model_dump() for row in schedule],
        )
        db.add(entry)
        return entry

    async def _usage_based(
        self, db: AsyncSession, event: ChargeEvent, rule: UsageBasedRule, now: datetime
    ) -> Optional[RevenueLedgerEntry]:
        result = await db.execute(
            select(UsageRecord.id, UsageRecord.quantity).where(
                UsageRecord.subscription_id == event.subscription_id,
                UsageRecord.processed.is_(False),
            )
        )
        rows = result.all()
        if not rows:
            return None

        record_ids = [record_id for record_id, _ in rows]
        quantity = sum((Decimal(str(qty)) for _, qty in rows), Decimal("0"))
        amount_cents = to_cents(quantity * rule.unit_price_cents)

        marked = await db.execute(
            update(UsageRecord)
            .where(UsageRecord.id.in_(record_ids), UsageRecord.processed.is_(False))
            .values(processed=True)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != len(record_ids):
            raise DataIntegrityViolation(
                "Usage records were recognized concurrently",
                subscription_id=event.subscription_id,
            )

        entry = RevenueLedgerEntry(
            subscription_id=event.subscription_id,
            amount_cents=amount_cents,
            currency=event.currency,
            type="USAGE",
            status="RECOGNIZED",
            recognition_type="USAGE_BASED",
            recognized_date=now,
            details={"quantity": str(quantity), "records": len(record_ids)},
        )
        db.add(entry)
        return entry

    async def _milestones(
        self, db: AsyncSession, event: ChargeEvent, rule: MilestoneRule, now: datetime
    ) -> List[RevenueLedgerEntry]:
        entries = []
        shares = milestone_shares(event.amount_cents, rule.milestones)
        for milestone in rule.milestones:
            key = f"{event.subscription_id}:{milestone.name}"
            existing = await db.scalar(
                select(RevenueLedgerEntry.id).where(RevenueLedgerEntry.milestone_key == key)
            )
            if existing is not None:
                continue
            if not await self.milestone_evaluator.is_met(db, event.subscription_id, milestone, now):
                continue

            entry = RevenueLedgerEntry(
                subscription_id=event.subscription_id,
                amount_cents=shares[milestone.name],
                currency=event.currency,
                type="MILESTONE",
                status="RECOGNIZED",
                recognition_type="MILESTONE",
                recognized_date=now,
                milestone_key=key,
                details={"milestone": milestone.name, "percentage": milestone.percentage},
            )
            db.add(entry)
            entries.append(entry)
        return entries

    async def process_subscription_revenue(
        self, subscription_id: uuid.UUID, now: Optional[datetime] = None
    ) -> List[RevenueLedgerEntry]:
        """
        Recognize the plan price of a subscription under its plan's rule.

        Raises:
            EntityNotFound: If the subscription does not exist
            ConfigurationError: If the plan or its recognition rule is missing or invalid
        """
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise EntityNotFound("Subscription not found", subscription_id=subscription_id)
            if subscription.plan_id is None:
                raise ConfigurationError(
                    "Subscription has no plan", subscription_id=subscription_id
                )
            plan = await db.get(Plan, subscription.plan_id)
            if plan is None:
                raise ConfigurationError("Plan not found", plan_id=subscription.plan_id)
            rule_row = await db.scalar(
                select(RevenueRecognitionRule)
                .where(RevenueRecognitionRule.plan_id == plan.id)
                .order_by(RevenueRecognitionRule.created_at.desc())
                .limit(1)
            )
            if rule_row is None:
                raise ConfigurationError("No revenue recognition rule for plan", plan_id=plan.id)

        try:
            rule = recognition_rule_adapter.validate_python(rule_row.rule)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid revenue recognition rule", plan_id=plan.id, errors=e.errors()
            ) from e

        event = ChargeEvent(
            subscription_id=subscription_id,
            amount_cents=plan.price_cents,
            currency=plan.currency,
        )
        return await self.recognize(event, rule, now)

    async def run_deferred_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Book due installments of all DEFERRED entries.

        Args:
            now: Sweep time (defaults to current UTC time)

        Returns:
            SweepReport: Per-entry outcome; integrity violations appear as errors
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(RevenueLedgerEntry.id)
                .where(
                    RevenueLedgerEntry.status == "DEFERRED",
                    RevenueLedgerEntry.deferred_amount_cents > 0,
                    RevenueLedgerEntry.next_recognition_at <= now,
                )
                .order_by(RevenueLedgerEntry.next_recognition_at)
            )
            entry_ids = list(result.scalars().all())

        return await run_per_entity(
            "deferred_revenue",
            entry_ids,
            lambda entry_id: self._advance_deferred_entry(entry_id, now),
            concurrency=self.settings.sweep_concurrency,
        )

    async def _load_balance(self, db: AsyncSession, entry: RevenueLedgerEntry) -> DeferredBalance:
        result = await db.execute(
            select(RevenueLedgerEntry.period_index, RevenueLedgerEntry.amount_cents).where(
                RevenueLedgerEntry.original_entry_id == entry.id,
                RevenueLedgerEntry.status == "RECOGNIZED",
            )
        )
        rows = result.all()
        return DeferredBalance(
            entry_id=entry.id,
            amount_cents=entry.amount_cents,
            recognized_cents=sum(amount for _, amount in rows),
            deferred_amount_cents=entry.deferred_amount_cents or 0,
            recognized_periods=frozenset(period for period, _ in rows),
        )

    async def deferred_balance(self, entry_id: uuid.UUID) -> DeferredBalance:
        """
        Conservation terms of a DEFERRED entry.

        Raises:
            EntityNotFound: If the entry does not exist or is not DEFERRED
        """
        async with self.session_factory() as db:
            entry = await db.get(RevenueLedgerEntry, entry_id)
            if entry is None or entry.status != "DEFERRED":
                raise EntityNotFound("Deferred entry not found", entry_id=entry_id)
            return await self._load_balance(db, entry)

    async def _advance_deferred_entry(self, entry_id: uuid.UUID, now: datetime) -> bool:
        violation: Optional[DataIntegrityViolation] = None

        async with self.session_factory() as db:
            entry = await db.get(RevenueLedgerEntry, entry_id, with_for_update=True)
            if (
                entry is None
                or entry.status != "DEFERRED"
                or not entry.deferred_amount_cents
                or entry.next_recognition_at is None
                or entry.next_recognition_at > now
            ):
                return False

            subscription_id = entry.subscription_id
            try:
                schedule = self._load_schedule(entry)
                balance = await self._load_balance(db, entry)
                if not balance.consistent:
                    raise DataIntegrityViolation(
                        "Deferred amount does not match recognized installments",
                        entry_id=entry_id,
                        expected_deferred=balance.amount_cents - balance.recognized_cents,
                        deferred_amount=balance.deferred_amount_cents,
                    )

                elapsed = min(months_elapsed(entry.recognized_date, now), len(schedule))
                due = self._due_rows(schedule, elapsed, balance.recognized_periods)
                for row in due:
                    db.add(
                        RevenueLedgerEntry(
                            subscription_id=subscription_id,
                            amount_cents=row.amount_cents,
                            currency=entry.currency,
                            type=entry.type,
                            status="RECOGNIZED",
                            recognition_type=entry.recognition_type,
                            recognized_date=now,
                            original_entry_id=entry_id,
                            period_index=row.period_index,
                        )
                    )

                booked = sum(row.amount_cents for row in due)
                remaining = entry.deferred_amount_cents - booked
                entry.deferred_amount_cents = remaining
                if remaining == 0:
                    entry.next_recognition_at = None
                else:
                    entry.next_recognition_at = add_months(entry.recognized_date, elapsed + 1)

                try:
                    await db.commit()
                except IntegrityError as e:
                    raise DataIntegrityViolation(
                        "Installment recognized concurrently", entry_id=entry_id
                    ) from e
            except DataIntegrityViolation as e:
                await db.rollback()
                violation = e

        if violation is not None:
            await self._alert_integrity_violation(entry_id, subscription_id, violation)
            raise violation

        if booked:
            metrics.record_revenue_recognized(entry.recognition_type, booked)
        logger.info(
            "deferred_revenue_recognized",
            entry_id=str(entry_id),
            periods=[row.period_index for row in due],
            amount_cents=booked,
            remaining_cents=remaining,
        )
        return bool(due)

    @staticmethod
    def _due_rows(
        schedule: List[ScheduleRow], elapsed: int, recognized: Set[int]
    ) -> List[ScheduleRow]:
        return [
            row
            for row in schedule
            if row.period_index <= elapsed and row.period_index not in recognized
        ]

    @staticmethod
    def _load_schedule(entry: RevenueLedgerEntry) -> List[ScheduleRow]:
        try:
            schedule = schedule_adapter.validate_python(entry.recognition_schedule or [])
        except ValidationError as e:
            raise DataIntegrityViolation(
                "Invalid recognition schedule", entry_id=entry.id
            ) from e
        if not schedule or sum(row.amount_cents for row in schedule) != entry.amount_cents:
            raise DataIntegrityViolation(
                "Recognition schedule does not sum to the entry amount",
                entry_id=entry.id,
                amount_cents=entry.amount_cents,
            )
        return sorted(schedule, key=lambda row: row.period_index)

    async def _alert_integrity_violation(
        self,
        entry_id: uuid.UUID,
        subscription_id: uuid.UUID,
        violation: DataIntegrityViolation,
    ) -> None:
        """Queue an operational alert for a halted entry."""
        metrics.record_integrity_violation()
        logger.error(
            "revenue_integrity_violation",
            entry_id=str(entry_id),
            error=violation.message,
            **{k: str(v) for k, v in violation.context.items() if k != "entry_id"},
        )
        async with self.session_factory() as db:
            enqueue_notification(
                db,
                entry_id,
                "revenue_ledger_entry",
                self.settings.alert_channel,
                "revenue_integrity_violation",
                {
                    "entry_id": entry_id,
                    "subscription_id": subscription_id,
                    "message": violation.message,
                    **{k: str(v) for k, v in violation.context.items() if k != "entry_id"},
                },
            )
            await db.commit()
