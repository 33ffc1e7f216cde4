"""
Billing gateway interface.

The gateway is the external system that invoices metered usage and holds the
customer's payment method. The engine needs two capabilities from it:
reporting usage (increment semantics, deduplicated by an idempotency key)
and re-attempting a failed charge.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Optional, TypeVar

import structlog

from billing_engine.core.exceptions import TransientExternalError
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge attempt. A declined card is a result, not an error."""

    success: bool
    code: Optional[str] = None
    message: Optional[str] = None


class BillingGateway(ABC):
    """External billing system used by the usage cycle and the retry scheduler."""

    @abstractmethod
    async def report_usage(
        self,
        external_ref: str,
        feature_id: str,
        quantity: Decimal,
        timestamp: datetime,
        idempotency_key: str,
    ) -> str:
        """
        Add ``quantity`` to the customer's metered usage of ``feature_id``.

        Reporting twice with the same ``idempotency_key`` must not double count.

        Returns:
            str: External usage record id
        """

    @abstractmethod
    async def charge_again(self, payment_ref: str) -> ChargeResult:
        """Re-attempt the charge behind ``payment_ref``."""


async def call_with_timeout(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """
    Await a gateway call with a deadline.

    Raises:
        TransientExternalError: If the call did not complete in time
    """
    start_time = time.time()
    try:
        result = await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
        logger.warning("gateway_call_timeout", operation=operation, timeout_seconds=timeout_seconds)
        raise TransientExternalError(
            f"Gateway call '{operation}' timed out",
            operation=operation,
            timeout_seconds=timeout_seconds,
        ) from e
    except Exception:
        metrics.record_gateway_call(operation, "error", time.time() - start_time)
        raise

    metrics.record_gateway_call(operation, "success", time.time() - start_time)
    return result
