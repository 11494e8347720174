"""Observability / alerting sink.

Terminal failures (escalation exhausted, a deadline that stays
unreadable) are emitted as events. Everything else is handled by the
engine's own retry and escalation and only logged.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from app.core.channels import safe_log, sanitize_log_message
from app.core.clock import utcnow
from app.core.config import Settings

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Event severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventType(str, Enum):
    ESCALATION_EXHAUSTED = "escalation_exhausted"
    DATA_UNAVAILABLE = "data_unavailable"


@dataclass
class ObservabilityEvent:
    """Event pushed to the external alerting system."""

    event_type: EventType
    title: str
    message: str
    severity: Severity = Severity.ERROR
    notification_id: str | None = None
    deadline_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "notification_id": self.notification_id,
            "deadline_id": self.deadline_id,
            "metadata": self.metadata,
            "occurred_at": self.occurred_at.isoformat(),
        }


class ObservabilitySink(ABC):
    @abstractmethod
    async def emit(self, event: ObservabilityEvent) -> None:
        """Publish an event. Must not raise."""


class LoggingSink(ObservabilitySink):
    """Writes events to the application log."""

    async def emit(self, event: ObservabilityEvent) -> None:
        level = logging.CRITICAL if event.severity == Severity.CRITICAL else logging.ERROR
        logger.log(
            level,
            f"[{event.event_type.value}] {event.title}: {sanitize_log_message(event.message)} "
            f"(notification={event.notification_id}, deadline={event.deadline_id})",
        )


class RecordingSink(ObservabilitySink):
    """Keeps events in memory; used by the health endpoint and tests."""

    def __init__(self, max_events: int = 500) -> None:
        self.events: list[ObservabilityEvent] = []
        self._max_events = max_events

    async def emit(self, event: ObservabilityEvent) -> None:
        self.events.append(event)
        if len(self.events) > self._max_events:
            del self.events[: len(self.events) - self._max_events]


def get_severity_color(severity: Severity | str) -> str:
    """Teams color code for a severity level."""
    colors = {
        Severity.INFO: "#0078D4",
        Severity.WARNING: "#FFB900",
        Severity.ERROR: "#D83B01",
        Severity.CRITICAL: "#A80000",
    }
    return colors.get(Severity(severity), "#0078D4")


def format_event_card(event: ObservabilityEvent) -> dict[str, Any]:
    """Format an event as a Teams Adaptive Card payload."""
    timestamp = event.occurred_at.strftime("%Y-%m-%d %H:%M UTC")

    facts = [{"title": "Event", "value": event.event_type.value}]
    if event.deadline_id:
        facts.append({"title": "Deadline", "value": event.deadline_id})
    if event.notification_id:
        facts.append({"title": "Notification", "value": event.notification_id})
    for key, value in event.metadata.items():
        facts.append({"title": key.replace("_", " ").title(), "value": str(value)})

    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "contentVersion": "1.4",
                "content": {
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "style": "emphasis",
                    "backgroundColor": get_severity_color(event.severity),
                    "body": [
                        {
                            "type": "TextBlock",
                            "text": event.title,
                            "weight": "Bolder",
                            "size": "Large",
                            "color": "Attention" if event.severity == Severity.CRITICAL else "Default",
                        },
                        {
                            "type": "TextBlock",
                            "text": f"Severity: **{event.severity.value.upper()}** • {timestamp}",
                            "size": "Small",
                            "isSubtle": True,
                        },
                        {
                            "type": "TextBlock",
                            "text": event.message[:500],
                            "wrap": True,
                            "spacing": "Medium",
                        },
                        {"type": "FactSet", "facts": facts},
                    ],
                },
            }
        ],
    }


class TeamsWebhookSink(ObservabilitySink):
    """Posts events to a Teams incoming webhook.

    SECURITY: the webhook URL is never logged.
    """

    def __init__(self, webhook_url: str, client: httpx.AsyncClient | None = None) -> None:
        self._webhook_url = webhook_url
        self._client = client

    async def emit(self, event: ObservabilityEvent) -> None:
        payload = format_event_card(event)
        try:
            if self._client is not None:
                response = await self._client.post(self._webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self._webhook_url, json=payload)
            response.raise_for_status()
            safe_log("info", f"Teams event sent: {event.title}")
        except httpx.HTTPError as e:
            safe_log("error", f"Failed to send Teams event: {e}")


class CompositeSink(ObservabilitySink):
    """Fans an event out to several sinks."""

    def __init__(self, sinks: list[ObservabilitySink]) -> None:
        self.sinks = sinks

    async def emit(self, event: ObservabilityEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(f"Observability sink {type(sink).__name__} failed: {e}", exc_info=True)


def build_sink(settings: Settings, recorder: RecordingSink | None = None) -> ObservabilitySink:
    """Assemble the sinks enabled in settings."""
    sinks: list[ObservabilitySink] = [LoggingSink()]
    if recorder is not None:
        sinks.append(recorder)
    if settings.observability_enabled and settings.teams_webhook_url:
        sinks.append(TeamsWebhookSink(settings.teams_webhook_url))
    return CompositeSink(sinks)
