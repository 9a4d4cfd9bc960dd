"""Tests for notification channels and the circuit breaker."""

import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.alerts.channels import (
    CircuitBreaker,
    CircuitState,
    EmailChannel,
    LogChannel,
    NotificationChannel,
    SmsChannel,
    WebhookChannel,
)


@pytest.fixture
def sample_alert(make_alert):
    return make_alert(
        alert_id=11,
        escalation_level="critical",
        severity="critical",
        title="Late Visit Alert - CRITICAL: Visit #V-100",
        actor_name="Sara Haddad",
        actor_phone="+966500000007",
        counterparty_name="Al Noor <Pharmacy>",
        delay_minutes=65,
        metadata={"delay_minutes": 65},
    )


def _mock_response(status_code: int = 200) -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(status_code=status_code, request=httpx.Request("POST", "http://test"))


@contextmanager
def _mock_http(response=None, side_effect=None):
    with patch("src.alerts.channels.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        if side_effect is not None:
            mock_client.post.side_effect = side_effect
        else:
            mock_client.post.return_value = response or _mock_response(200)
        mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield mock_client


class TestWebhookChannel:
    """Tests for WebhookChannel."""

    @pytest.mark.asyncio
    async def test_successful_send(self, sample_alert):
        channel = WebhookChannel("admin", "https://ops.example.com/hooks/admin")

        with _mock_http() as mock_client:
            result = await channel.send(sample_alert)

        assert result is True
        mock_client.post.assert_called_once()
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["event"] == "notify_admin"
        assert payload["alert_id"] == 11
        assert payload["escalation_level"] == "critical"
        assert payload["metadata"]["delay_minutes"] == 65

    @pytest.mark.asyncio
    async def test_failure_on_500(self, sample_alert):
        channel = WebhookChannel("supervisor", "https://ops.example.com/hooks/sup")
        with _mock_http(_mock_response(500)):
            assert await channel.send(sample_alert) is False

    @pytest.mark.asyncio
    async def test_timeout_handling(self, sample_alert):
        channel = WebhookChannel("push", "https://push.example.com", timeout=1.0)
        with _mock_http(side_effect=httpx.TimeoutException("timed out")):
            assert await channel.send(sample_alert) is False

    @pytest.mark.asyncio
    async def test_connection_error(self, sample_alert):
        channel = WebhookChannel("push", "https://push.example.com")
        with _mock_http(side_effect=httpx.ConnectError("refused")):
            assert await channel.send(sample_alert) is False

    def test_push_payload_carries_data(self, sample_alert):
        channel = WebhookChannel("push", "https://push.example.com")
        payload = channel._build_payload(sample_alert)
        assert payload["event"] == "send_push"
        assert payload["data"]["source_entity_id"] == "V-100"
        assert payload["timestamp"] == sample_alert.updated_at.isoformat()

    @pytest.mark.asyncio
    async def test_custom_headers(self, sample_alert):
        channel = WebhookChannel(
            "admin", "https://ops.example.com/hooks/admin",
            headers={"Authorization": "Bearer test-token"},
        )
        with _mock_http() as mock_client:
            await channel.send(sample_alert)

        sent_headers = mock_client.post.call_args.kwargs["headers"]
        assert sent_headers["Authorization"] == "Bearer test-token"

    def test_rejects_non_webhook_channel(self):
        with pytest.raises(ValueError):
            WebhookChannel("sms", "https://sms.example.com")

    def test_name(self):
        assert WebhookChannel("supervisor", "https://x").name == "supervisor"


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_sends_html_email(self, sample_alert):
        channel = EmailChannel(
            "https://mail.example.com/send", ["ops@example.com"], "alerts@example.com", api_key="k",
        )
        with _mock_http() as mock_client:
            assert await channel.send(sample_alert) is True

        kwargs = mock_client.post.call_args.kwargs
        assert kwargs["json"]["to"] == ["ops@example.com"]
        assert kwargs["json"]["subject"] == "[CRITICAL] Late Visit Alert - CRITICAL: Visit #V-100"
        assert kwargs["headers"] == {"Authorization": "Bearer k"}

    def test_body_escapes_values(self, sample_alert):
        channel = EmailChannel("https://mail.example.com/send", ["ops@example.com"], "a@example.com")
        body = channel._body(sample_alert)
        assert "Al Noor &lt;Pharmacy&gt;" in body
        assert "<strong>Delay (minutes):</strong> 65" in body
        assert "Address" not in body

    @pytest.mark.asyncio
    async def test_no_recipients(self, sample_alert):
        channel = EmailChannel("https://mail.example.com/send", [], "a@example.com")
        with _mock_http() as mock_client:
            assert await channel.send(sample_alert) is False
        mock_client.post.assert_not_called()


class TestSmsChannel:
    @pytest.mark.asyncio
    async def test_sends_text(self, sample_alert):
        channel = SmsChannel("https://sms.example.com", ["+966500000001"])
        with _mock_http() as mock_client:
            assert await channel.send(sample_alert) is True

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["to"] == ["+966500000001"]
        assert payload["text"].startswith("Late Visit Alert - CRITICAL")

    def test_text_truncated(self, make_alert):
        channel = SmsChannel("https://sms.example.com", ["+1"])
        text = channel._text(make_alert(message="x" * 500))
        assert len(text) == SmsChannel.MAX_LENGTH
        assert text.endswith("...")

    @pytest.mark.asyncio
    async def test_no_recipients(self, sample_alert):
        channel = SmsChannel("https://sms.example.com", [])
        assert await channel.send(sample_alert) is False


class TestLogChannel:
    @pytest.mark.asyncio
    async def test_always_succeeds(self, sample_alert):
        channel = LogChannel("email")
        assert channel.name == "email"
        assert await channel.send(sample_alert) is True


class TestCircuitBreaker:
    """Tests for CircuitBreaker state machine."""

    def _inner(self, result: bool):
        inner = AsyncMock(spec=NotificationChannel)
        inner.name = "admin"
        inner.send.return_value = result
        return inner

    @pytest.mark.asyncio
    async def test_passes_through_when_closed(self, sample_alert):
        inner = self._inner(True)
        breaker = CircuitBreaker(inner, failure_threshold=3)

        assert await breaker.send(sample_alert) is True
        assert breaker.state == CircuitState.CLOSED
        assert breaker.name == "admin"
        inner.send.assert_called_once_with(sample_alert)

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self, sample_alert):
        breaker = CircuitBreaker(self._inner(False), failure_threshold=3, recovery_timeout=60.0)
        for _ in range(3):
            await breaker.send(sample_alert)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_rejects_when_open(self, sample_alert):
        inner = self._inner(False)
        breaker = CircuitBreaker(inner, failure_threshold=2, recovery_timeout=60.0)
        await breaker.send(sample_alert)
        await breaker.send(sample_alert)
        inner.send.reset_mock()

        assert await breaker.send(sample_alert) is False
        inner.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self, sample_alert):
        inner = self._inner(False)
        breaker = CircuitBreaker(inner, failure_threshold=2, recovery_timeout=0.01)
        await breaker.send(sample_alert)
        await breaker.send(sample_alert)
        assert breaker.state == CircuitState.OPEN

        await asyncio.sleep(0.02)
        inner.send.return_value = True

        assert await breaker.send(sample_alert) is True
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, sample_alert):
        breaker = CircuitBreaker(self._inner(False), failure_threshold=1, recovery_timeout=0.01)
        await breaker.send(sample_alert)
        await asyncio.sleep(0.02)

        assert await breaker.send(sample_alert) is False
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, sample_alert):
        inner = self._inner(False)
        breaker = CircuitBreaker(inner, failure_threshold=2)
        await breaker.send(sample_alert)
        inner.send.return_value = True
        await breaker.send(sample_alert)
        inner.send.return_value = False
        await breaker.send(sample_alert)
        assert breaker.state == CircuitState.CLOSED
