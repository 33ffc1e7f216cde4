"""
Tests for notification dispatchers.
"""
import pytest

from billing_engine.integrations.notifications import (
    ChannelRouter,
    LoggingNotificationDispatcher,
    NotificationDeliveryError,
)

from .conftest import RecordingDispatcher


class TestChannelRouter:
    """Test suite for ChannelRouter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_routes_by_channel(self) -> None:
        email, sms = RecordingDispatcher(), RecordingDispatcher()
        router = ChannelRouter({"email": email, "sms": sms})

        await router.notify("sms", "dunning_sms", {"days_past_due": 3})

        assert email.sent == []
        assert sms.sent == [
            {"channel": "sms", "template_key": "dunning_sms", "data": {"days_past_due": 3}}
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback(self) -> None:
        fallback = RecordingDispatcher()
        router = ChannelRouter({}, fallback=fallback)

        await router.notify("slack", "payment_manual_intervention", {})

        assert fallback.sent[0]["channel"] == "slack"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrouted_channel_fails_delivery(self) -> None:
        router = ChannelRouter({"email": LoggingNotificationDispatcher()})

        with pytest.raises(NotificationDeliveryError):
            await router.notify("pagerduty", "revenue_integrity_violation", {})
