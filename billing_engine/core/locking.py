"""
Per-subscription mutual exclusion for sweeps.

Two sweeps (or two worker processes running the same sweep) must never
operate on one subscription at the same time. A subscription whose lock is
held elsewhere is skipped for the current run and picked up by the next one.

Backends:
- DatabaseLeaseLocker: a row in ``sweep_leases`` taken with a conditional
  update on expiry (default, needs nothing beyond the database)
- RedlockSubscriptionLocker: Redis Redlock
"""
import asyncio
import os
import socket
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

import structlog
from redlock import Redlock
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings
from billing_engine.core.exceptions import ConfigurationError
from billing_engine.database.models import SweepLease, utcnow
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def subscription_lock_key(subscription_id: Any) -> str:
    return f"subscription:lock:{subscription_id}"


class SubscriptionLocker(ABC):
    """Mutex keyed by resource name, with a lease so crashed holders expire."""

    @abstractmethod
    async def acquire(self, key: str) -> Optional[Any]:
        """
        Try to take the lock without waiting.

        Returns:
            A release token, or None when the lock is held elsewhere
        """

    @abstractmethod
    async def release(self, key: str, token: Any) -> None:
        """Release a lock taken with ``acquire``."""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """
        Hold the lock for the duration of the block.

        Yields True when acquired, False when the lock is held elsewhere; the
        caller is expected to skip its work in the latter case.
        """
        token = await self.acquire(key)
        if token is None:
            metrics.record_subscription_lock("contended")
            logger.info("subscription_lock_contended", lock_key=key)
            yield False
            return

        metrics.record_subscription_lock("acquired")
        try:
            yield True
        finally:
            try:
                await self.release(key, token)
            except Exception as e:
                # The lease expires on its own
                metrics.record_subscription_lock("error")
                logger.error("subscription_lock_release_failed", lock_key=key, error=str(e))


class DatabaseLeaseLocker(SubscriptionLocker):
    """
    Lease rows in ``sweep_leases``.

    A free or expired lease is taken with a single conditional UPDATE; a
    missing row is created with INSERT, losing the race surfaces as an
    IntegrityError on the primary key.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: int = 300,
        owner: Optional[str] = None,
    ):
        """
        Initialize database lease locker.

        Args:
            session_factory: Session factory; leases use their own transactions
            lease_seconds: Lease duration before a crashed holder loses the lock
            owner: Owner prefix recorded on the lease (defaults to host:pid)
        """
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"

    async def acquire(self, key: str) -> Optional[str]:
        token = f"{self.owner}:{uuid.uuid4().hex}"
        now = utcnow()
        expires_at = now + timedelta(seconds=self.lease_seconds)

        async with self.session_factory() as db:
            result = await db.execute(
                update(SweepLease)
                .where(SweepLease.resource_key == key, SweepLease.expires_at < now)
                .values(owner=token, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                logger.debug("lease_taken_over", lock_key=key, owner=token)
                return token

            db.add(SweepLease(resource_key=key, owner=token, expires_at=expires_at))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None

        logger.debug("lease_acquired", lock_key=key, owner=token)
        return token

    async def release(self, key: str, token: Any) -> None:
        async with self.session_factory() as db:
            await db.execute(
                delete(SweepLease)
                .where(SweepLease.resource_key == key, SweepLease.owner == token)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.debug("lease_released", lock_key=key)


class RedlockSubscriptionLocker(SubscriptionLocker):
    """Redis Redlock backend; the client is blocking and runs in the default executor."""

    def __init__(self, redis_url: str, lease_seconds: int = 300):
        self.redis_url = redis_url
        self.lease_seconds = lease_seconds
        self.redlock: Optional[Redlock] = None

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            # A held lock means skip this run, so no retry loop
            self.redlock = Redlock([self.redis_url], retry_count=1)
        return self.redlock

    async def acquire(self, key: str) -> Optional[Any]:
        redlock = self._get_redlock()
        loop = asyncio.get_running_loop()
        lock = await loop.run_in_executor(
            None, lambda: redlock.lock(key, self.lease_seconds * 1000)
        )
        if not lock:
            return None
        logger.debug("redlock_acquired", lock_key=key)
        return lock

    async def release(self, key: str, token: Any) -> None:
        redlock = self._get_redlock()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: redlock.unlock(token))
        logger.debug("redlock_released", lock_key=key)


def build_locker(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> SubscriptionLocker:
    """Create the locker configured by ``settings.lock_backend``."""
    if settings.lock_backend == "database":
        return DatabaseLeaseLocker(session_factory, lease_seconds=settings.lock_timeout_seconds)
    if settings.lock_backend == "redis":
        return RedlockSubscriptionLocker(
            settings.redis_url, lease_seconds=settings.lock_timeout_seconds
        )
    raise ConfigurationError("Unknown lock backend", lock_backend=settings.lock_backend)
