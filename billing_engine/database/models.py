"""SQLAlchemy database models for the billing engine."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalized to UTC on the way in and come back aware even on
    backends (SQLite) that drop the offset.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Plan(Base):
    """Subscription plan with its recurring price."""

    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    interval: Mapped[str] = mapped_column(String(10), nullable=False, default="month")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="plan_non_negative_price"),
        CheckConstraint("interval IN ('month', 'year')", name="plan_valid_interval"),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name}, price={self.price_cents})>"


class Subscription(Base):
    """
    Customer subscription.

    ``external_customer_ref`` links the subscription to its billing account at
    the payment gateway; usage accrues without it but is only reported once set.
    ``usage_status`` is EXCEEDED while usage of the current month is over a
    plan limit.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("plans.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    usage_status: Mapped[str] = mapped_column(String(20), nullable=False, default="NORMAL")
    external_customer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    grace_period_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PAST_DUE', 'CANCELED')",
            name="subscription_valid_status",
        ),
        CheckConstraint(
            "usage_status IN ('NORMAL', 'EXCEEDED')",
            name="subscription_valid_usage_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, status={self.status})>"


class UsageRecord(Base):
    """
    Metered usage event.

    Append-only: the only mutations are flipping ``billed`` (billing cycle)
    and ``processed`` (usage-based revenue recognition).
    """

    __tablename__ = "usage_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False
    )
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    billed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    usage_charge_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("usage_charges.id"), nullable=True
    )
    external_usage_record_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="usage_non_negative_quantity"),
        Index("idx_usage_records_sub_feature_billed", "subscription_id", "feature_id", "billed"),
        Index("idx_usage_records_sub_processed", "subscription_id", "processed"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecord(id={self.id}, feature={self.feature_id}, "
            f"quantity={self.quantity}, billed={self.billed})>"
        )


class UsageCharge(Base):
    """
    Charge produced for one (subscription, feature) pair in one billing cycle.

    Created PENDING together with the claim on its usage records, flipped to
    REPORTED together with the ``billed`` flag once the gateway accepted it.
    """

    __tablename__ = "usage_charges"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    external_usage_record_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    reported_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'REPORTED')", name="usage_charge_valid_status"),
        Index("idx_usage_charges_sub_status", "subscription_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageCharge(id={self.id}, feature={self.feature_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class UsageTier(Base):
    """
    One pricing band of a feature's tier set.

    Tier sets are immutable once in use; a new ``version`` replaces them.
    """

    __tablename__ = "usage_tiers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    from_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    to_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    flat_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_usage_tiers_feature_version", "feature_id", "version"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageTier(feature={self.feature_id}, v{self.version}, "
            f"[{self.from_quantity}, {self.to_quantity}))>"
        )


class UsageLimit(Base):
    """Monthly usage allowance of a feature on a plan, with alert thresholds in percent."""

    __tablename__ = "usage_limits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("plans.id"), nullable=False)
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    limit_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    warning_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=80)
    critical_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=90)

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_usage_limit_plan_feature"),
        CheckConstraint("limit_quantity > 0", name="usage_limit_positive"),
        CheckConstraint(
            "warning_pct > 0 AND warning_pct <= critical_pct AND critical_pct <= 100",
            name="usage_limit_valid_thresholds",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageLimit(plan={self.plan_id}, feature={self.feature_id}, "
            f"limit={self.limit_quantity})>"
        )


class UsageLimitAlert(Base):
    """
    Usage alert raised for a subscription.

    One row per (subscription, feature, month, level), so each level alerts
    at most once per month.
    """

    __tablename__ = "usage_limit_alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False
    )
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    usage_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    limit_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "feature_id", "period_start", "level",
            name="uq_usage_limit_alert_period_level",
        ),
        CheckConstraint(
            "level IN ('WARNING', 'CRITICAL', 'EXCEEDED')",
            name="usage_limit_alert_valid_level",
        ),
    )


class RevenueRecognitionRule(Base):
    """Recognition rule of a plan; ``rule`` holds a tagged rule variant."""

    __tablename__ = "revenue_recognition_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("plans.id"), nullable=False, index=True
    )
    rule: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class RevenueLedgerEntry(Base):
    """
    Revenue ledger entry.

    Append-only. For a DEFERRED entry only ``deferred_amount_cents`` and
    ``next_recognition_at`` move; installments are separate RECOGNIZED
    entries pointing back through ``original_entry_id``.
    """

    __tablename__ = "revenue_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    recognition_type: Mapped[str] = mapped_column(String(20), nullable=False)
    recognized_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deferred_amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    deferred_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_recognition_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    recognition_schedule: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(
        JSONType, nullable=True
    )
    original_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("revenue_ledger.id"), nullable=True
    )
    period_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    milestone_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, unique=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("type IN ('RECURRING', 'USAGE', 'MILESTONE')", name="ledger_valid_type"),
        CheckConstraint("status IN ('RECOGNIZED', 'DEFERRED')", name="ledger_valid_status"),
        CheckConstraint(
            "deferred_amount_cents IS NULL OR deferred_amount_cents >= 0",
            name="ledger_non_negative_deferred",
        ),
        UniqueConstraint("original_entry_id", "period_index", name="uq_ledger_installment"),
        Index("idx_revenue_ledger_status_deferred_until", "status", "deferred_until"),
        Index("idx_revenue_ledger_status_next_recognition", "status", "next_recognition_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RevenueLedgerEntry(id={self.id}, amount={self.amount_cents}, "
            f"type={self.type}, status={self.status})>"
        )


class Invoice(Base):
    """Invoice issued to a subscription."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('open', 'paid', 'void')", name="invoice_valid_status"),
        Index("idx_invoices_status_due", "status", "due_date"),
    )


class Payment(Base):
    """Payment of an invoice, as known to the gateway."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    external_payment_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="payment_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'failed', 'succeeded')",
            name="payment_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount_cents}, status={self.status})>"


class RetryStrategy(Base):
    """Retry state machine of one failed payment."""

    __tablename__ = "retry_strategies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=False, index=True
    )
    policy: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    intervals: Mapped[List[int]] = mapped_column(JSONType, nullable=False)
    next_retry_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SUCCEEDED', 'FAILED')", name="retry_valid_status"
        ),
        CheckConstraint("attempts_made <= max_attempts", name="retry_attempts_bounded"),
        Index("idx_retry_strategies_status_next", "status", "next_retry_date"),
        Index(
            "uq_retry_strategies_active_payment",
            "payment_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RetryStrategy(id={self.id}, attempts={self.attempts_made}/"
            f"{self.max_attempts}, status={self.status})>"
        )


class PaymentAttempt(Base):
    """Audit record of one retry execution. Immutable once written."""

    __tablename__ = "payment_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    retry_strategy_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class DunningConfig(Base):
    """Per-organization dunning step configuration. One active per organization."""

    __tablename__ = "dunning_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "uq_dunning_configs_active_org",
            "organization_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class DunningLog(Base):
    """Append-only log of executed dunning steps."""

    __tablename__ = "dunning_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    step_days_past_due: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    days_past_due: Mapped[int] = mapped_column(Integer, nullable=False)
    retry_attempted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    executed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("invoice_id", "step_days_past_due", name="uq_dunning_log_step"),
    )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notifications are written in the same transaction as the state change they
    announce, then relayed to the dispatcher by a background worker. Failed
    deliveries back off via next_attempt_at; rows out of attempts are marked dead.
    """

    __tablename__ = "outbox_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dead: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "dead", "next_attempt_at", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class SweepLease(Base):
    """Single-row lease used as a cross-process mutex."""

    __tablename__ = "sweep_leases"

    resource_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
