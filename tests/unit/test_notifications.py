"""Tests for nurse team notifications."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from app.core.escalation.models import EscalationType, NotificationPayload, Urgency
from app.infra.notifications import (
    DeliveryStatus,
    NotificationConfigError,
    NotificationDeliveryError,
    NotificationService,
    format_trigger_list,
    sanitize_user_id,
)
from app.safety.models import Severity


WEBHOOK_URL = "https://example.webhook.office.com/webhookb2/test"


def _response(status_code: int = 200, text: str = "1") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


class TestHelpers:
    """Test payload formatting helpers."""

    def test_sanitize_user_id(self):
        """Test only the first 8 characters are shown."""
        assert sanitize_user_id("user-12345678") == "user-123***"

    def test_trigger_list_truncated(self):
        """Test 10 triggers show the first 5 plus a remainder count."""
        triggers = [f"trigger_{i}" for i in range(10)]

        formatted = format_trigger_list(triggers)

        assert formatted == "trigger_0, trigger_1, trigger_2, trigger_3, trigger_4 (+5 more)"

    def test_trigger_list_short(self):
        """Test short lists are shown whole."""
        assert format_trigger_list(["want to die"]) == "want to die"
        assert format_trigger_list([]) == "None"


class TestNotificationService:
    """Test crisis alert delivery."""

    @pytest.fixture
    def mock_httpx_client(self):
        """Mock HTTP client."""
        client = AsyncMock()
        client.post = AsyncMock(return_value=_response())
        return client

    @pytest.fixture
    def service(self, mock_httpx_client):
        """Service with mock client and no delay between attempts."""
        service = NotificationService(
            webhook_url=WEBHOOK_URL,
            max_retries=3,
            retry_delay=0,
        )
        service._client = mock_httpx_client
        return service

    @pytest.fixture
    def payload(self):
        """Crisis payload."""
        return NotificationPayload(
            escalation_id="esc-123",
            user_id="user-12345678",
            severity=Severity.CRISIS,
            urgency=Urgency.IMMEDIATE,
            summary="CRISIS escalation: 1 triggers detected (suicide_ideation)",
            trigger_matches=["want to die"],
            requires_callback=True,
            escalation_type=EscalationType.CRISIS,
            timestamp=datetime(2024, 5, 14, 14, 0, tzinfo=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_send_success(self, service, mock_httpx_client, payload):
        """Test acknowledged delivery on the first attempt."""
        result = await service.send_crisis_alert(payload)

        assert result.status == DeliveryStatus.SENT
        assert result.retry_count == 0
        assert result.attempts == 1
        assert result.message_id is not None
        mock_httpx_client.post.assert_called_once()
        assert mock_httpx_client.post.call_args.args[0] == WEBHOOK_URL

    @pytest.mark.asyncio
    async def test_retry_then_success(self, service, mock_httpx_client, payload):
        """Test two failures then an acknowledgement."""
        mock_httpx_client.post = AsyncMock(
            side_effect=[_response(500, "error"), _response(502, "bad gateway"), _response()]
        )

        result = await service.send_crisis_alert(payload)

        assert result.status == DeliveryStatus.SENT
        assert result.retry_count == 2
        assert [a.success for a in result.audit_trail] == [False, False, True]
        assert mock_httpx_client.post.call_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_acknowledgement(self, service, mock_httpx_client, payload):
        """Test HTTP 200 without the acknowledgement body is a failure."""
        mock_httpx_client.post = AsyncMock(return_value=_response(200, "ok"))

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await service.send_crisis_alert(payload)

        assert exc_info.value.attempts == 3
        assert exc_info.value.result.status == DeliveryStatus.FAILED
        assert "Unexpected acknowledgement" in exc_info.value.result.audit_trail[0].error

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_retries(self, service, mock_httpx_client, payload):
        """Test transport errors are retried then raised."""
        mock_httpx_client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await service.send_crisis_alert(payload)

        assert exc_info.value.escalation_id == "esc-123"
        assert exc_info.value.result.attempts == 3
        assert exc_info.value.result.retry_count == 2

    @pytest.mark.asyncio
    async def test_missing_webhook(self, mock_httpx_client, payload):
        """Test missing configuration fails without any call."""
        service = NotificationService(webhook_url="", retry_delay=0)
        service._client = mock_httpx_client

        with pytest.raises(NotificationConfigError) as exc_info:
            await service.send_crisis_alert(payload)

        assert exc_info.value.attempts == 0
        mock_httpx_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_backoff_delays(self, mock_httpx_client, payload):
        """Test the delay grows by the backoff multiplier."""
        service = NotificationService(
            webhook_url=WEBHOOK_URL,
            max_retries=3,
            retry_delay=1.0,
            backoff_multiplier=2.0,
        )
        service._client = mock_httpx_client
        mock_httpx_client.post = AsyncMock(return_value=_response(500, "error"))

        with patch("app.infra.notifications.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(NotificationDeliveryError):
                await service.send_crisis_alert(payload)

        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_alert_card(self, service, payload):
        """Test MessageCard layout."""
        card = service.build_alert_card(payload)

        assert card["@type"] == "MessageCard"
        assert card["themeColor"] == "FF0000"
        facts = {f["name"]: f["value"] for f in card["sections"][0]["facts"]}
        assert facts["Escalation ID"] == "esc-123"
        assert facts["Severity"] == "CRISIS"
        assert facts["User ID"] == "user-123***"
        assert facts["Requires Callback"].startswith("YES")
        assert facts["Trigger Matches"] == "want to die"
        uri = card["potentialAction"][0]["targets"][0]["uri"]
        assert uri.endswith("/esc-123")

    def test_alert_card_truncates_triggers(self, service, payload):
        """Test long trigger lists are truncated on the card."""
        payload.trigger_matches = [f"trigger_{i}" for i in range(10)]

        card = service.build_alert_card(payload)

        facts = {f["name"]: f["value"] for f in card["sections"][0]["facts"]}
        assert facts["Trigger Matches"].endswith("(+5 more)")

    def test_alert_card_low_urgency(self, service, payload):
        """Test urgency drives card colour."""
        payload.urgency = Urgency.LOW

        card = service.build_alert_card(payload)

        assert card["themeColor"] == "00CC00"

    @pytest.mark.asyncio
    async def test_follow_up_failure_not_raised(self, service, mock_httpx_client):
        """Test follow-ups are non-critical."""
        mock_httpx_client.post = AsyncMock(return_value=_response(500, "error"))

        delivered = await service.send_follow_up_notification("esc-123", "resolved", "Nurse called back")

        assert delivered is False
        mock_httpx_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_follow_up_success(self, service, mock_httpx_client):
        """Test follow-up delivery."""
        delivered = await service.send_follow_up_notification("esc-123", "escalated", "Passed to GP")

        assert delivered is True
        card = mock_httpx_client.post.call_args.kwargs["json"]
        assert card["themeColor"] == "FF0000"

    @pytest.mark.asyncio
    async def test_connection(self, service, mock_httpx_client):
        """Test webhook connection check."""
        assert await service.test_connection() is True

    @pytest.mark.asyncio
    async def test_close(self, service, mock_httpx_client):
        """Test client is closed and released."""
        await service.close()

        mock_httpx_client.aclose.assert_called_once()
        assert service._client is None
