"""Tests for channel providers and log sanitization."""

import json

import httpx
import pytest

from app.core.channels import (
    ChannelRegistry,
    EmailProvider,
    SmsProvider,
    UnconfiguredChannelProvider,
    sanitize_log_message,
    shorten,
)
from app.schemas.enums import Channel, FailureReason


class TestSanitizeLogMessage:
    """Tests for sensitive data redaction."""

    def test_redacts_urls(self):
        assert "hooks.example" not in sanitize_log_message("posting to https://hooks.example/abc?sig=1")

    def test_redacts_contacts(self):
        message = sanitize_log_message("sending to jane@example.com and +1 555 010 9999")
        assert "jane@example.com" not in message
        assert "555" not in message

    def test_redacts_tokens_keeping_key(self):
        assert sanitize_log_message("api_key=abc123") == "api_key=[REDACTED]"

    def test_leaves_ids_alone(self):
        message = "notification 3f2a retry 2 at 2026-03-02"
        assert sanitize_log_message(message) == message


class TestShorten:
    def test_short_text_unchanged(self):
        assert shorten("hello   world") == "hello world"

    def test_long_text_ellipsised(self):
        result = shorten("x" * 500)
        assert len(result) == 160
        assert result.endswith("…")


class TestHttpProviders:
    """Tests for gateway-backed providers."""

    @pytest.mark.asyncio
    async def test_email_posts_payload_with_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"message_id": "m-1"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = EmailProvider("https://gateway.test/email", client=client)
            result = await provider.send("a@example.com", "Subject", "Body", "attempt-1:email")

        assert result.success
        assert result.provider_message_id == "m-1"
        assert seen["headers"]["Idempotency-Key"] == "attempt-1:email"
        assert seen["body"] == {"to": "a@example.com", "subject": "Subject", "text": "Body"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as client:
            provider = SmsProvider("https://gateway.test/sms", client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await provider.send("+15550000001", None, "Body", "k")

    def test_sms_renders_short_message(self):
        provider = SmsProvider("https://gateway.test/sms")
        assert provider.render_body("long " * 100, "short one") == "short one"
        assert len(provider.render_body("long " * 100)) <= 160


class TestChannelRegistry:
    """Tests for provider lookup."""

    def test_from_settings_registers_configured_channels(self, settings):
        settings.channel_gateway_urls = {"email": "https://gateway.test/email"}
        registry = ChannelRegistry.from_settings(settings)

        assert isinstance(registry.get("email"), EmailProvider)
        assert isinstance(registry.get(Channel.SMS), UnconfiguredChannelProvider)
        assert registry.configured_channels() == ["email"]

    @pytest.mark.asyncio
    async def test_unconfigured_channel_fails(self):
        result = await UnconfiguredChannelProvider(Channel.PHONE).send("+1", None, "m", "k")
        assert not result.success
        assert result.failure_reason == FailureReason.NOT_CONFIGURED
