"""
Notification relay worker.

Continuously polls the outbox table and delivers notifications through the
configured dispatcher.
"""
import asyncio
import signal
from typing import Optional

import structlog

from billing_engine.config import get_settings
from billing_engine.core.outbox import OutboxPublisher
from billing_engine.database.connection import close_db
from billing_engine.integrations.notifications import NotificationDispatcher
from billing_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_notification_relay(dispatcher: Optional[NotificationDispatcher] = None) -> None:
    """
    Start the notification relay.

    Runs until SIGINT/SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("notification_relay_starting")

    publisher = OutboxPublisher(
        dispatcher=dispatcher,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
        retry_backoff_seconds=settings.outbox_retry_backoff_seconds,
        max_backoff_seconds=settings.outbox_max_backoff_seconds,
        alert_channel=settings.alert_channel,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("notification_relay_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("notification_relay_stopped")


def main() -> None:
    asyncio.run(start_notification_relay())


if __name__ == "__main__":
    main()
