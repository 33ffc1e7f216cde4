"""Billing computation and retry engines."""
from .exceptions import (
    BillingError,
    ConfigurationError,
    DataIntegrityViolation,
    EntityNotFound,
    InvalidTransition,
    TransientExternalError,
)

__all__ = [
    "BillingError",
    "ConfigurationError",
    "DataIntegrityViolation",
    "EntityNotFound",
    "InvalidTransition",
    "TransientExternalError",
]
