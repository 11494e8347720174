"""Channel providers for notification delivery.

Each delivery medium (email, SMS, WhatsApp, phone, push, in-app) is a
``ChannelProvider`` registered in a ``ChannelRegistry``. Adding a channel
means adding a provider class, not editing a dispatch branch.

The bundled providers post a channel-specific JSON payload to a gateway
URL (the CRUD layer or a vendor bridge) with an ``Idempotency-Key``
header, so a retried attempt is never delivered twice by the gateway.

SECURITY: gateway URLs and recipient contacts are sanitized from logs.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import Settings
from app.schemas.enums import Channel, FailureReason

logger = logging.getLogger(__name__)

SHORT_MESSAGE_LIMIT = 160

# Regex patterns for sensitive data redaction
URL_PATTERN = re.compile(r"https?://[^\s\"']+", re.IGNORECASE)
SENSITIVE_PATTERNS = {
    "email": re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"),
    "phone": re.compile(r"\+\d[\d\s().-]{7,}\d"),
    "token": re.compile(r"(['\"]?(?:token|api[_-]?key|secret)['\"]?\s*[:=]\s*)['\"]?[^'\"\s,]+", re.IGNORECASE),
    "bearer": re.compile(r"(bearer\s+)\S+", re.IGNORECASE),
}


def sanitize_log_message(message: str) -> str:
    """Redact URLs, contact details and credentials from a log message."""
    if not message:
        return message

    sanitized = URL_PATTERN.sub("[URL_REDACTED]", message)

    for pattern in SENSITIVE_PATTERNS.values():
        def replace_sensitive(match: re.Match) -> str:
            # Preserve the key/prefix part when the pattern captures one
            if match.lastindex:
                return f"{match.group(1)}[REDACTED]"
            return "[REDACTED]"
        sanitized = pattern.sub(replace_sensitive, sanitized)

    return sanitized


def safe_log(level: str, message: str, *args, **kwargs) -> None:
    """Log a message with automatic sanitization of sensitive data."""
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(sanitize_log_message(message), *args, **kwargs)


def shorten(text: str, limit: int = SHORT_MESSAGE_LIMIT) -> str:
    """Fit text into ``limit`` characters, ellipsising if needed."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


@dataclass
class SendResult:
    """Outcome of a single provider call."""

    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None

    @classmethod
    def failed(cls, error: str, reason: FailureReason = FailureReason.UNKNOWN) -> "SendResult":
        return cls(success=False, error=error, failure_reason=reason)


class ChannelProvider(ABC):
    """Capability interface for one delivery channel."""

    channel: Channel
    # Channels with a tight length budget get the short message
    max_length: int | None = None

    def render_body(self, message: str, short_message: str | None = None) -> str:
        if self.max_length is None:
            return message
        return shorten(short_message or message, self.max_length)

    @abstractmethod
    async def send(
        self,
        contact: str,
        subject: str | None,
        message: str,
        dedup_key: str,
    ) -> SendResult:
        """Deliver a message; must be safe to call twice with one dedup_key."""


class HttpChannelProvider(ChannelProvider):
    """Posts a JSON payload to a channel gateway."""

    def __init__(
        self,
        gateway_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.gateway_url = gateway_url
        self._client = client
        self._timeout = timeout

    @abstractmethod
    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        """Channel-specific request body."""

    async def send(
        self,
        contact: str,
        subject: str | None,
        message: str,
        dedup_key: str,
    ) -> SendResult:
        payload = self.build_payload(contact, subject, message)
        headers = {"Content-Type": "application/json", "Idempotency-Key": dedup_key}

        safe_log("debug", f"Sending {self.channel.value} notification to configured gateway")

        if self._client is not None:
            response = await self._client.post(self.gateway_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.gateway_url, json=payload, headers=headers)
        response.raise_for_status()

        body: dict[str, Any] = {}
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}
        message_id = body.get("message_id") or body.get("id") or response.headers.get("X-Message-Id")
        return SendResult(success=True, provider_message_id=message_id)


class EmailProvider(HttpChannelProvider):
    channel = Channel.EMAIL

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        return {"to": contact, "subject": subject or "Compliance notification", "text": body}


class SmsProvider(HttpChannelProvider):
    channel = Channel.SMS
    max_length = SHORT_MESSAGE_LIMIT

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        return {"to": contact, "body": body}


class WhatsAppProvider(HttpChannelProvider):
    channel = Channel.WHATSAPP
    max_length = SHORT_MESSAGE_LIMIT

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        return {"to": f"whatsapp:{contact}", "body": body}


class PhoneProvider(HttpChannelProvider):
    channel = Channel.PHONE

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        script = f"{subject}. {body}" if subject else body
        return {"to": contact, "say": script, "repeat": 2}


class PushProvider(HttpChannelProvider):
    channel = Channel.PUSH

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        return {
            "device_token": contact,
            "title": subject or "Compliance alert",
            "body": shorten(body, 240),
        }


class InAppProvider(HttpChannelProvider):
    channel = Channel.IN_APP

    def build_payload(self, contact: str, subject: str | None, body: str) -> dict[str, Any]:
        return {"user_id": contact, "title": subject, "body": body}


class UnconfiguredChannelProvider(ChannelProvider):
    """Stand-in for a channel with no gateway; every send fails."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    async def send(self, contact: str, subject: str | None, message: str, dedup_key: str) -> SendResult:
        safe_log("warning", f"{self.channel.value} channel has no gateway configured")
        return SendResult.failed(
            f"{self.channel.value} channel not configured", FailureReason.NOT_CONFIGURED
        )


PROVIDER_CLASSES: dict[Channel, type[HttpChannelProvider]] = {
    Channel.EMAIL: EmailProvider,
    Channel.SMS: SmsProvider,
    Channel.WHATSAPP: WhatsAppProvider,
    Channel.PHONE: PhoneProvider,
    Channel.PUSH: PushProvider,
    Channel.IN_APP: InAppProvider,
}


class ChannelRegistry:
    """Lookup table from channel to provider."""

    def __init__(self, providers: dict[Channel, ChannelProvider] | None = None) -> None:
        self._providers: dict[Channel, ChannelProvider] = dict(providers or {})

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "ChannelRegistry":
        registry = cls()
        for channel in Channel:
            url = settings.channel_gateway_urls.get(channel.value)
            if url:
                provider_cls = PROVIDER_CLASSES[channel]
                registry.register(
                    provider_cls(url, client=client, timeout=settings.provider_timeout_seconds)
                )
            else:
                registry.register(UnconfiguredChannelProvider(channel))
        return registry

    def register(self, provider: ChannelProvider) -> None:
        self._providers[Channel(provider.channel)] = provider

    def get(self, channel: Channel | str) -> ChannelProvider:
        channel = Channel(channel)
        if channel not in self._providers:
            return UnconfiguredChannelProvider(channel)
        return self._providers[channel]

    def configured_channels(self) -> list[str]:
        return [
            channel.value
            for channel, provider in self._providers.items()
            if not isinstance(provider, UnconfiguredChannelProvider)
        ]
