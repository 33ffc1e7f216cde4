"""
Transactional outbox for notifications.

Engines write notifications to ``outbox_events`` in the same transaction as
the state change they announce. The relay reads unpublished events, hands
them to the NotificationDispatcher and marks them published. A crash between
delivery and marking re-delivers, so delivery is at-least-once. Failed
deliveries are retried with exponential backoff and dead-lettered, with an
alert, once out of attempts.
"""
import asyncio
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.database.connection import get_session_factory
from billing_engine.database.models import OutboxEvent, utcnow
from billing_engine.integrations.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def enqueue_notification(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    channel: str,
    template_key: str,
    data: Dict[str, Any],
) -> OutboxEvent:
    """
    Queue a notification in the caller's transaction.

    Args:
        db: Session of the transaction carrying the state change
        aggregate_id: Id of the entity the notification is about
        aggregate_type: Entity kind (subscription, payment, invoice, ...)
        channel: Delivery channel
        template_key: Template identifier
        data: Template variables; UUIDs, datetimes and Decimals are serialized

    Returns:
        OutboxEvent: The pending event (flushed with the transaction)
    """
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=template_key,
        payload={"channel": channel, "data": to_jsonable_python(data)},
    )
    db.add(event)
    logger.debug(
        "notification_enqueued",
        aggregate_id=str(aggregate_id),
        channel=channel,
        template_key=template_key,
    )
    return event


def enqueue_notifications(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    channels: List[str],
    template_key: str,
    data: Dict[str, Any],
) -> List[OutboxEvent]:
    """Queue the same notification on several channels."""
    return [
        enqueue_notification(db, aggregate_id, aggregate_type, channel, template_key, data)
        for channel in channels
    ]


class OutboxPublisher:
    """
    Relays notifications from the outbox table to the dispatcher.

    1. Read due, undelivered events from outbox
    2. Deliver each through the dispatcher
    3. Mark delivered events as published
    4. Back off failed events; dead-letter them once out of attempts
    """

    DEAD_LETTER_TEMPLATE = "outbox_delivery_failed"

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 10,
        retry_backoff_seconds: float = 30.0,
        max_backoff_seconds: float = 3600.0,
        alert_channel: Optional[str] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            dispatcher: Notification dispatcher (logs notifications by default)
            session_factory: Session factory (process-wide one by default)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            max_attempts: Deliveries tried before an event is marked dead
            retry_backoff_seconds: Delay after the first failure, doubled per attempt
            max_backoff_seconds: Cap on the retry delay
            alert_channel: Channel told about dead events (none if unset)
        """
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.alert_channel = alert_channel
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    @staticmethod
    def _pending_clause() -> Any:
        return and_(OutboxEvent.published.is_(False), OutboxEvent.dead.is_(False))

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        """
        Fetch due, undelivered events from outbox, oldest first.

        Events waiting out a retry delay are skipped so they cannot hold back
        newer notifications. Rows are locked with SKIP LOCKED so parallel relays
        split the queue.
        """
        stmt = (
            select(OutboxEvent)
            .where(
                self._pending_clause(),
                or_(
                    OutboxEvent.next_attempt_at.is_(None),
                    OutboxEvent.next_attempt_at <= utcnow(),
                ),
            )
            .order_by(OutboxEvent.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    def retry_delay(self, attempts: int) -> timedelta:
        """Delay before the next delivery after ``attempts`` failures."""
        seconds = self.retry_backoff_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.max_backoff_seconds))

    async def _publish_event(self, db: AsyncSession, event: OutboxEvent) -> bool:
        """
        Deliver a single event.

        Returns:
            bool: True if delivered, False otherwise
        """
        start_time = time.time()
        try:
            await self.dispatcher.notify(
                event.payload["channel"], event.event_type, event.payload.get("data", {})
            )
        except Exception as e:
            logger.exception(
                "outbox_event_publish_failed",
                event_id=str(event.id),
                event_type=event.event_type,
                attempt=event.attempts + 1,
                error=str(e),
            )
            self._record_failure(db, event, e)
            return False

        metrics.record_outbox_event_published(event.event_type, time.time() - start_time)
        logger.info(
            "outbox_event_published",
            event_id=str(event.id),
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    def _record_failure(self, db: AsyncSession, event: OutboxEvent, error: Exception) -> None:
        event.attempts += 1
        event.last_error = f"{type(error).__name__}: {error}"

        if event.attempts < self.max_attempts:
            event.next_attempt_at = utcnow() + self.retry_delay(event.attempts)
            metrics.record_outbox_delivery_failure(event.event_type, dead=False)
            return

        event.dead = True
        event.next_attempt_at = None
        metrics.record_outbox_delivery_failure(event.event_type, dead=True)
        logger.error(
            "outbox_event_dead_lettered",
            event_id=str(event.id),
            event_type=event.event_type,
            channel=event.payload.get("channel"),
            attempts=event.attempts,
            last_error=event.last_error,
        )

        # A dead alert is not alerted on again
        if self.alert_channel and event.event_type != self.DEAD_LETTER_TEMPLATE:
            enqueue_notification(
                db,
                event.aggregate_id,
                event.aggregate_type,
                self.alert_channel,
                self.DEAD_LETTER_TEMPLATE,
                {
                    "event_id": event.id,
                    "template_key": event.event_type,
                    "channel": event.payload.get("channel"),
                    "attempts": event.attempts,
                    "last_error": event.last_error,
                },
            )

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[uuid.UUID]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow(), next_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of due events.

        Delivery outcomes and retry bookkeeping commit together.

        Returns:
            int: Number of events delivered
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)

                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                for event in events:
                    if await self._publish_event(db, event):
                        published_ids.append(event.id)

                await self._mark_as_published(db, published_ids)
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )

                return len(published_ids)

            except Exception as e:
                logger.exception("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the relay loop.

        Continuously polls for unpublished events and delivers them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check immediately for more
                    await asyncio.sleep(0)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the relay loop after the current batch."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of undelivered events still being retried.

        Returns:
            int: Number of unpublished events that are not dead
        """
        async with self.session_factory() as db:
            stmt = select(func.count()).select_from(OutboxEvent).where(self._pending_clause())
            return int(await db.scalar(stmt) or 0)
