"""Database package for the billing engine."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    DunningConfig,
    DunningLog,
    Invoice,
    OutboxEvent,
    Payment,
    PaymentAttempt,
    Plan,
    RetryStrategy,
    RevenueLedgerEntry,
    RevenueRecognitionRule,
    Subscription,
    SweepLease,
    UsageCharge,
    UsageRecord,
    UsageTier,
)

__all__ = [
    "Base",
    "DunningConfig",
    "DunningLog",
    "Invoice",
    "OutboxEvent",
    "Payment",
    "PaymentAttempt",
    "Plan",
    "RetryStrategy",
    "RevenueLedgerEntry",
    "RevenueRecognitionRule",
    "Subscription",
    "SweepLease",
    "UsageCharge",
    "UsageRecord",
    "UsageTier",
    "get_db",
    "get_session_factory",
    "init_db",
]
