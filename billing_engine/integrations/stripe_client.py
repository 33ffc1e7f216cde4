"""
Stripe implementation of the billing gateway.

Implements:
- Usage reporting through Stripe billing meter events, deduplicated by
  the meter event ``identifier``
- Charge retries through ``Invoice.pay`` / ``PaymentIntent.confirm``
- Exponential backoff for transient errors on usage reports
- Circuit breaker pattern
"""
import asyncio
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_engine.config import Settings, get_settings
from billing_engine.core.exceptions import (
    BillingError,
    ConfigurationError,
    TransientExternalError,
)
from billing_engine.integrations.gateway import BillingGateway, ChargeResult
from billing_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ALREADY_PAID_CODES = frozenset({"invoice_already_paid"})
# Confirming an intent that is no longer confirmable, e.g. one already paid
UNEXPECTED_STATE_CODE = "payment_intent_unexpected_state"


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(BillingError):
    """Stripe call failed; ``error_type`` says whether retrying can help."""

    error_code = "gateway_error"

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
        **context: Any,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message, error_type=error_type.value, **context)
        self.error_type = error_type
        self.original_error = original_error


class TransientGatewayError(GatewayError, TransientExternalError):
    """Rate limit, connection failure, Stripe-side error or open circuit."""

    error_code = "transient_external_error"


def classify_error(error: Exception) -> StripeErrorType:
    """
    Classify Stripe error for retry logic.

    Args:
        error: Stripe error

    Returns:
        StripeErrorType: Error classification
    """
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
        return StripeErrorType.TRANSIENT
    elif isinstance(
        error,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
        ),
    ):
        return StripeErrorType.PERMANENT
    else:
        # Unknown errors are treated as transient
        return StripeErrorType.TRANSIENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Permanent errors (declines, invalid
    requests) say nothing about Stripe's health and do not count.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute function with circuit breaker protection.

        Raises:
            TransientGatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise TransientGatewayError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if classify_error(e) is not StripeErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeGateway(BillingGateway):
    """
    Billing gateway backed by the Stripe API.

    Features:
    - Automatic retry with exponential backoff for usage reports
    - Circuit breaker pattern
    - Idempotent usage reporting
    - Comprehensive error classification

    The Stripe SDK is blocking; calls run in the default executor so a slow
    Stripe response does not stall other subscriptions of the sweep.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Stripe gateway.

        Raises:
            ConfigurationError: If no Stripe secret key is configured
        """
        settings = settings or get_settings()
        if not settings.stripe_secret_key:
            raise ConfigurationError("BILLING_STRIPE_SECRET_KEY is not set")
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking Stripe call through the circuit breaker, off the event loop."""
        loop = asyncio.get_running_loop()
        start_time = time.time()
        try:
            result = await loop.run_in_executor(None, lambda: self.circuit_breaker.call(func))
        except stripe.StripeError:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            raise
        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    def _handle_stripe_error(self, error: stripe.StripeError, **context: Any) -> GatewayError:
        """
        Classify a Stripe error and log it.

        Returns:
            GatewayError: Transient or permanent error to raise
        """
        error_type = classify_error(error)
        metrics.record_gateway_error(error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
            **context,
        )

        error_cls = (
            GatewayError if error_type is StripeErrorType.PERMANENT else TransientGatewayError
        )
        return error_cls(
            str(error),
            error_type,
            original_error=error,
            stripe_code=getattr(error, "code", None),
            **context,
        )

    async def report_usage(
        self,
        external_ref: str,
        feature_id: str,
        quantity: Decimal,
        timestamp: datetime,
        idempotency_key: str,
    ) -> str:
        """
        Report usage as a Stripe billing meter event.

        The meter is addressed by ``feature_id`` (the meter's event name) and
        the meter event ``identifier`` is the idempotency key, so Stripe drops
        a repeated report of the same charge.

        Args:
            external_ref: Stripe customer id
            feature_id: Meter event name
            quantity: Usage quantity to add
            timestamp: Time the usage is attributed to
            idempotency_key: Stable key of the usage charge

        Returns:
            str: Meter event identifier

        Raises:
            TransientGatewayError: If all attempts failed transiently
            GatewayError: If Stripe rejected the report
        """
        logger.info(
            "reporting_usage",
            customer=external_ref,
            feature_id=feature_id,
            quantity=str(quantity),
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            return stripe.billing.MeterEvent.create(
                event_name=feature_id,
                payload={"stripe_customer_id": external_ref, "value": str(quantity)},
                identifier=idempotency_key,
                timestamp=int(timestamp.timestamp()),
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientGatewayError),
            stop=stop_after_attempt(self.settings.usage_report_max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        ):
            with attempt:
                try:
                    meter_event = await self._call("report_usage", _create)
                except stripe.StripeError as e:
                    raise self._handle_stripe_error(
                        e, feature_id=feature_id, idempotency_key=idempotency_key
                    ) from e

        logger.info(
            "usage_reported",
            feature_id=feature_id,
            identifier=meter_event.identifier,
        )
        return meter_event.identifier

    async def charge_again(self, payment_ref: str) -> ChargeResult:
        """
        Re-attempt payment of an invoice (``in_...``) or a PaymentIntent.

        Card declines and other permanent rejections come back as an
        unsuccessful result carrying the decline code.

        Raises:
            TransientGatewayError: If Stripe could not be reached
        """
        logger.info("charging_again", payment_ref=payment_ref)

        if payment_ref.startswith("in_"):
            def _charge() -> Any:
                return stripe.Invoice.pay(payment_ref)

            succeeded_status = "paid"
        else:
            def _charge() -> Any:
                return stripe.PaymentIntent.confirm(payment_ref)

            succeeded_status = "succeeded"

        try:
            obj = await self._call("charge_again", _charge)
        except stripe.CardError as e:
            code = getattr(e.error, "decline_code", None) or e.code
            metrics.record_gateway_error(StripeErrorType.PERMANENT.value)
            logger.info("charge_declined", payment_ref=payment_ref, code=code)
            return ChargeResult(success=False, code=code, message=e.user_message or str(e))
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            if code in ALREADY_PAID_CODES:
                logger.info("charge_already_settled", payment_ref=payment_ref, code=code)
                return ChargeResult(success=True, code=code)
            if code == UNEXPECTED_STATE_CODE and not payment_ref.startswith("in_"):
                return await self._resolve_intent_state(payment_ref, e)
            error = self._handle_stripe_error(e, payment_ref=payment_ref)
            if isinstance(error, TransientGatewayError):
                raise error from e
            return ChargeResult(success=False, code=code, message=str(e))

        if obj.status == succeeded_status:
            logger.info("charge_succeeded", payment_ref=payment_ref)
            return ChargeResult(success=True)

        logger.info("charge_not_completed", payment_ref=payment_ref, status=obj.status)
        return ChargeResult(success=False, code=obj.status)

    async def _resolve_intent_state(
        self, payment_ref: str, error: stripe.StripeError
    ) -> ChargeResult:
        """
        Look up a PaymentIntent that refused confirmation.

        An intent confirmed by an earlier attempt whose outcome was lost
        (timeout, crash before commit) reports success instead of a decline.
        """
        try:
            intent = await self._call(
                "retrieve_payment_intent", lambda: stripe.PaymentIntent.retrieve(payment_ref)
            )
        except stripe.StripeError as e:
            lookup_error = self._handle_stripe_error(e, payment_ref=payment_ref)
            if isinstance(lookup_error, TransientGatewayError):
                raise lookup_error from e
            return ChargeResult(success=False, code=error.code, message=str(error))

        if intent.status == "succeeded":
            logger.info("charge_already_settled", payment_ref=payment_ref, code=error.code)
            return ChargeResult(success=True, code=error.code)

        logger.info("charge_not_completed", payment_ref=payment_ref, status=intent.status)
        return ChargeResult(success=False, code=intent.status, message=str(error))
