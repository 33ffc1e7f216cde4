"""
Notification dispatch interface.

Delivery channels (email, SMS, Slack, ...) live outside the billing engine.
The engine only knows ``notify(channel, template_key, data)``; the outbox
relay calls it for every queued notification.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


class NotificationDeliveryError(Exception):
    """Raised by a dispatcher when a notification could not be delivered."""

    pass


class NotificationDispatcher(ABC):
    """Delivers one templated notification on one channel."""

    @abstractmethod
    async def notify(self, channel: str, template_key: str, data: Dict[str, Any]) -> None:
        """
        Deliver a notification.

        Args:
            channel: Delivery channel (e.g. "email", "sms", "slack")
            template_key: Template identifier understood by the channel
            data: Template variables

        Raises:
            NotificationDeliveryError: If delivery failed; the outbox retries it
        """


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the structured log. Default when no channel is wired."""

    async def notify(self, channel: str, template_key: str, data: Dict[str, Any]) -> None:
        logger.info(
            "notification_dispatched",
            channel=channel,
            template_key=template_key,
            data=data,
        )


class ChannelRouter(NotificationDispatcher):
    """Routes notifications to per-channel dispatchers."""

    def __init__(
        self,
        routes: Mapping[str, NotificationDispatcher],
        fallback: Optional[NotificationDispatcher] = None,
    ):
        self.routes = dict(routes)
        self.fallback = fallback

    async def notify(self, channel: str, template_key: str, data: Dict[str, Any]) -> None:
        dispatcher = self.routes.get(channel, self.fallback)
        if dispatcher is None:
            raise NotificationDeliveryError(f"No dispatcher configured for channel '{channel}'")
        await dispatcher.notify(channel, template_key, data)
