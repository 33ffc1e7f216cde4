"""
Payment retry state machine.

    PENDING --record_success--> SUCCEEDED
    PENDING --record_failure--> PENDING   (attempts left, next date pushed back)
    PENDING --record_failure--> FAILED    (attempts exhausted)

SUCCEEDED and FAILED are terminal. ``next_retry_date`` only moves forward and
FAILED is reached exactly when ``attempts_made == max_attempts``.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence, Tuple

from billing_engine.core.exceptions import InvalidTransition
from billing_engine.database.models import RetryStrategy

HOUR = 3600


class RetryStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule; one retry per interval."""

    name: str
    intervals_seconds: Tuple[int, ...]

    @property
    def max_attempts(self) -> int:
        return len(self.intervals_seconds)

    @classmethod
    def from_hours(cls, name: str, hours: Sequence[int]) -> "RetryPolicy":
        return cls(name=name, intervals_seconds=tuple(h * HOUR for h in hours))


DEFAULT_POLICY = RetryPolicy.from_hours("default", [1, 6, 24, 72])
# Temporary failures: retry sooner and more often
AGGRESSIVE_POLICY = RetryPolicy.from_hours("aggressive", [3, 24, 72, 168, 336])
# High-risk failures: few, widely spaced retries
CONSERVATIVE_POLICY = RetryPolicy.from_hours("conservative", [72, 168])

HIGH_RISK_CODES = ("fraudulent", "stolen_card", "lost_card")
TEMPORARY_CODES = ("insufficient_funds", "processing_error", "expired_card")


def select_policy(
    failure_code: Optional[str], default: RetryPolicy = DEFAULT_POLICY
) -> RetryPolicy:
    """Pick the retry policy for a decline code."""
    code = (failure_code or "").lower()
    if any(marker in code for marker in HIGH_RISK_CODES):
        return CONSERVATIVE_POLICY
    if any(marker in code for marker in TEMPORARY_CODES):
        return AGGRESSIVE_POLICY
    return default


def start_strategy(payment_id: uuid.UUID, policy: RetryPolicy, now: datetime) -> RetryStrategy:
    """New PENDING strategy with the first retry one interval from now."""
    return RetryStrategy(
        payment_id=payment_id,
        policy=policy.name,
        attempts_made=0,
        max_attempts=policy.max_attempts,
        intervals=list(policy.intervals_seconds),
        next_retry_date=now + timedelta(seconds=policy.intervals_seconds[0]),
        status=RetryStatus.PENDING.value,
    )


def _ensure_pending(strategy: RetryStrategy, transition: str) -> None:
    if strategy.status != RetryStatus.PENDING.value:
        raise InvalidTransition(
            f"Cannot {transition} a {strategy.status} retry strategy",
            retry_strategy_id=strategy.id,
            status=strategy.status,
        )


def record_success(strategy: RetryStrategy) -> None:
    """
    Close the strategy after a successful charge.

    Raises:
        InvalidTransition: If the strategy is already terminal
    """
    _ensure_pending(strategy, "record success on")
    strategy.status = RetryStatus.SUCCEEDED.value
    strategy.next_retry_date = None


def record_failure(strategy: RetryStrategy, now: datetime) -> bool:
    """
    Count a failed attempt and schedule the next one.

    Returns:
        bool: True when the strategy is now exhausted (FAILED)

    Raises:
        InvalidTransition: If the strategy is already terminal
    """
    _ensure_pending(strategy, "record failure on")
    if strategy.attempts_made + 1 < strategy.max_attempts:
        strategy.attempts_made += 1
        interval = strategy.intervals[min(strategy.attempts_made, len(strategy.intervals) - 1)]
        strategy.next_retry_date = now + timedelta(seconds=interval)
        return False

    strategy.attempts_made = strategy.max_attempts
    strategy.status = RetryStatus.FAILED.value
    strategy.next_retry_date = None
    return True
