"""External integrations: billing gateway and notification dispatch."""
from .gateway import BillingGateway, ChargeResult, call_with_timeout
from .notifications import (
    ChannelRouter,
    LoggingNotificationDispatcher,
    NotificationDeliveryError,
    NotificationDispatcher,
)
from .stripe_client import GatewayError, StripeGateway, TransientGatewayError

__all__ = [
    "BillingGateway",
    "ChargeResult",
    "call_with_timeout",
    "ChannelRouter",
    "LoggingNotificationDispatcher",
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "GatewayError",
    "StripeGateway",
    "TransientGatewayError",
]
