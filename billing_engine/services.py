"""
Service container.

Workers build the engines once at start-up and pass them around explicitly;
nothing in the engines reaches for process globals beyond the cached
settings and session factory used as defaults.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings, get_settings
from billing_engine.core.dunning import DunningCommunicator
from billing_engine.core.locking import SubscriptionLocker, build_locker
from billing_engine.core.outbox import OutboxPublisher
from billing_engine.core.pricing import TieredPricingCalculator
from billing_engine.core.retry_scheduler import DunningRetryScheduler
from billing_engine.core.revenue_recognition import MilestoneEvaluator, RevenueRecognitionEngine
from billing_engine.core.usage_billing import UsageBillingCycle
from billing_engine.database.connection import get_session_factory
from billing_engine.integrations.gateway import BillingGateway
from billing_engine.integrations.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from billing_engine.integrations.stripe_client import StripeGateway


@dataclass
class BillingServices:
    """Engines and their shared collaborators."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: BillingGateway
    locker: SubscriptionLocker
    dispatcher: NotificationDispatcher
    usage_billing: UsageBillingCycle
    revenue: RevenueRecognitionEngine
    retries: DunningRetryScheduler
    dunning: DunningCommunicator
    outbox: OutboxPublisher


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[BillingGateway] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    locker: Optional[SubscriptionLocker] = None,
    milestone_evaluator: Optional[MilestoneEvaluator] = None,
) -> BillingServices:
    """
    Wire the billing engines.

    Args:
        settings: Settings (cached settings by default)
        session_factory: Session factory (process-wide one by default)
        gateway: Billing gateway (Stripe by default)
        dispatcher: Notification dispatcher (structured log by default)
        locker: Subscription locker (``settings.lock_backend`` by default)
        milestone_evaluator: Milestone criteria evaluator

    Returns:
        BillingServices: Wired services

    Raises:
        ConfigurationError: If the Stripe gateway is needed but not configured
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    gateway = gateway or StripeGateway(settings)
    dispatcher = dispatcher or LoggingNotificationDispatcher()
    locker = locker or build_locker(settings, session_factory)

    retries = DunningRetryScheduler(gateway, locker, session_factory, settings)
    return BillingServices(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        locker=locker,
        dispatcher=dispatcher,
        usage_billing=UsageBillingCycle(
            gateway, locker, session_factory, TieredPricingCalculator(), settings
        ),
        revenue=RevenueRecognitionEngine(session_factory, milestone_evaluator, settings),
        retries=retries,
        dunning=DunningCommunicator(retries, locker, session_factory, settings),
        outbox=OutboxPublisher(
            dispatcher,
            session_factory,
            batch_size=settings.outbox_batch_size,
            poll_interval_seconds=settings.outbox_poll_interval_seconds,
            max_attempts=settings.outbox_max_attempts,
            retry_backoff_seconds=settings.outbox_retry_backoff_seconds,
            max_backoff_seconds=settings.outbox_max_backoff_seconds,
            alert_channel=settings.alert_channel,
        ),
    )
