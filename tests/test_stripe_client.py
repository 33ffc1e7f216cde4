"""
Tests for the Stripe gateway: error classification, circuit breaker and the
two gateway operations with the Stripe SDK patched out.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
import stripe

from billing_engine.config import Settings
from billing_engine.core.exceptions import ConfigurationError, TransientExternalError
from billing_engine.integrations.stripe_client import (
    CircuitBreaker,
    GatewayError,
    StripeErrorType,
    StripeGateway,
    TransientGatewayError,
    classify_error,
)

USAGE_TIME = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def stripe_gateway(test_settings: Settings) -> StripeGateway:
    return StripeGateway(test_settings, CircuitBreaker(failure_threshold=3, timeout=60))


class TestClassifyError:
    """Test suite for Stripe error classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("Too many requests"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("Network down"), StripeErrorType.TRANSIENT),
            (stripe.APIError("Stripe unavailable"), StripeErrorType.TRANSIENT),
            (stripe.CardError("Declined", None, "card_declined"), StripeErrorType.PERMANENT),
            (stripe.InvalidRequestError("No such customer", "customer"), StripeErrorType.PERMANENT),
            (stripe.AuthenticationError("Bad key"), StripeErrorType.PERMANENT),
            (ValueError("unexpected"), StripeErrorType.TRANSIENT),
        ],
    )
    def test_classification(self, error: Exception, expected: StripeErrorType) -> None:
        assert classify_error(error) is expected


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        failing = MagicMock(side_effect=stripe.APIConnectionError("Network down"))

        for _ in range(2):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(failing)

        assert breaker.state == "open"
        with pytest.raises(TransientGatewayError, match="Circuit breaker is open"):
            breaker.call(failing)
        assert failing.call_count == 2

    @pytest.mark.unit
    def test_permanent_errors_do_not_count(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2)
        declined = MagicMock(side_effect=stripe.CardError("Declined", None, "card_declined"))

        for _ in range(5):
            with pytest.raises(stripe.CardError):
                breaker.call(declined)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        with pytest.raises(stripe.APIError):
            breaker.call(MagicMock(side_effect=stripe.APIError("boom")))
        assert breaker.state == "open"
        breaker.last_failure_time -= 1

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        breaker.call(lambda: "ok")
        assert breaker.state == "closed"


class TestStripeGatewayInit:
    """Test suite for gateway construction."""

    @pytest.mark.unit
    def test_missing_key_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            StripeGateway(Settings(stripe_secret_key=None))

    @pytest.mark.unit
    def test_sets_api_key(self, stripe_gateway: StripeGateway) -> None:
        assert stripe.api_key == "sk_test_fake_key_for_testing"


class TestReportUsage:
    """Test suite for usage reporting through meter events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_meter_event_with_identifier(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.billing.MeterEvent.create",
            return_value=MagicMock(identifier="usage_abc"),
        )

        result = await stripe_gateway.report_usage(
            "cus_test_123", "api_calls", Decimal("100"), USAGE_TIME, "usage_abc"
        )

        assert result == "usage_abc"
        create.assert_called_once_with(
            event_name="api_calls",
            payload={"stripe_customer_id": "cus_test_123", "value": "100"},
            identifier="usage_abc",
            timestamp=int(USAGE_TIME.timestamp()),
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_retried_with_same_identifier(
        self, test_settings: Settings, mocker: Any
    ) -> None:
        settings = test_settings.model_copy(update={"usage_report_max_attempts": 2})
        gateway = StripeGateway(settings, CircuitBreaker())
        create = mocker.patch(
            "stripe.billing.MeterEvent.create",
            side_effect=[stripe.RateLimitError("Too many requests"), MagicMock(identifier="usage_abc")],
        )

        result = await gateway.report_usage(
            "cus_test_123", "api_calls", Decimal("5"), USAGE_TIME, "usage_abc"
        )

        assert result == "usage_abc"
        assert create.call_count == 2
        assert {c.kwargs["identifier"] for c in create.call_args_list} == {"usage_abc"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_after_last_attempt(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.billing.MeterEvent.create",
            side_effect=stripe.APIConnectionError("Network down"),
        )

        with pytest.raises(TransientExternalError):
            await stripe_gateway.report_usage(
                "cus_test_123", "api_calls", Decimal("5"), USAGE_TIME, "usage_abc"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_report_is_permanent(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.billing.MeterEvent.create",
            side_effect=stripe.InvalidRequestError("No such meter", "event_name"),
        )

        with pytest.raises(GatewayError) as exc_info:
            await stripe_gateway.report_usage(
                "cus_test_123", "unknown_meter", Decimal("5"), USAGE_TIME, "usage_abc"
            )
        assert not isinstance(exc_info.value, TransientExternalError)
        assert exc_info.value.error_type is StripeErrorType.PERMANENT


class TestChargeAgain:
    """Test suite for charge retries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_paid(self, stripe_gateway: StripeGateway, mocker: Any) -> None:
        pay = mocker.patch("stripe.Invoice.pay", return_value=MagicMock(status="paid"))

        result = await stripe_gateway.charge_again("in_test_456")

        assert result.success
        pay.assert_called_once_with("in_test_456")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_confirm(self, stripe_gateway: StripeGateway, mocker: Any) -> None:
        confirm = mocker.patch(
            "stripe.PaymentIntent.confirm",
            return_value=MagicMock(status="requires_payment_method"),
        )

        result = await stripe_gateway.charge_again("pi_test_789")

        confirm.assert_called_once_with("pi_test_789")
        assert not result.success
        assert result.code == "requires_payment_method"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_decline_is_a_result(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.Invoice.pay",
            side_effect=stripe.CardError("Your card has insufficient funds.", None, "card_declined"),
        )

        result = await stripe_gateway.charge_again("in_test_456")

        assert not result.success
        assert result.code == "card_declined"
        assert result.message == "Your card has insufficient funds."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_paid_invoice_is_success(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.Invoice.pay",
            side_effect=stripe.InvalidRequestError(
                "Invoice is already paid", None, code="invoice_already_paid"
            ),
        )

        result = await stripe_gateway.charge_again("in_test_456")

        assert result.success

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_intent_confirmed_earlier_is_success(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.confirm",
            side_effect=stripe.InvalidRequestError(
                "This PaymentIntent's status is succeeded, so it cannot be confirmed.",
                None,
                code="payment_intent_unexpected_state",
            ),
        )
        retrieve = mocker.patch(
            "stripe.PaymentIntent.retrieve", return_value=MagicMock(status="succeeded")
        )

        result = await stripe_gateway.charge_again("pi_test_789")

        retrieve.assert_called_once_with("pi_test_789")
        assert result.success
        assert result.code == "payment_intent_unexpected_state"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_intent_in_unconfirmable_state_is_failure(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.confirm",
            side_effect=stripe.InvalidRequestError(
                "This PaymentIntent's status is canceled, so it cannot be confirmed.",
                None,
                code="payment_intent_unexpected_state",
            ),
        )
        mocker.patch("stripe.PaymentIntent.retrieve", return_value=MagicMock(status="canceled"))

        result = await stripe_gateway.charge_again("pi_test_789")

        assert not result.success
        assert result.code == "canceled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_intent_lookup_outage_is_transient(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.confirm",
            side_effect=stripe.InvalidRequestError(
                "cannot be confirmed", None, code="payment_intent_unexpected_state"
            ),
        )
        mocker.patch(
            "stripe.PaymentIntent.retrieve", side_effect=stripe.APIConnectionError("Network down")
        )

        with pytest.raises(TransientGatewayError):
            await stripe_gateway.charge_again("pi_test_789")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_raised(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch("stripe.Invoice.pay", side_effect=stripe.APIConnectionError("Network down"))

        with pytest.raises(TransientGatewayError):
            await stripe_gateway.charge_again("in_test_456")
