"""
Exception taxonomy for the billing engine.

- ConfigurationError: bad tier sets, missing recognition rules. Fatal, never
  retried automatically.
- TransientExternalError: gateway timeouts, rate limits. Retried by the next
  sweep or by the dunning backoff policy.
- DataIntegrityViolation: ledger invariant mismatches. Processing of the
  affected entity halts and an alert is raised; nothing is auto-corrected.
"""
from typing import Any, Dict


class BillingError(Exception):
    """
    Base exception for billing engine errors.

    Every error carries a stable ``error_code`` and free-form context that is
    copied into sweep reports and structured logs.
    """

    error_code = "billing_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for sweep reports."""
        return {
            "code": self.error_code,
            "message": self.message,
            "type": self.__class__.__name__,
            **{k: str(v) for k, v in self.context.items()},
        }


class ConfigurationError(BillingError):
    """Inconsistent tier definitions, missing recognition rule, bad dunning steps."""

    error_code = "configuration_error"


class TransientExternalError(BillingError):
    """Gateway timeout, rate limit or connection failure."""

    error_code = "transient_external_error"


class DataIntegrityViolation(BillingError):
    """Ledger sums mismatch or duplicate recognition."""

    error_code = "data_integrity_violation"


class InvalidTransition(BillingError):
    """Retry state machine transition out of a terminal state."""

    error_code = "invalid_transition"


class EntityNotFound(BillingError):
    """Referenced subscription, payment or entry does not exist."""

    error_code = "entity_not_found"
