"""Notification-related Pydantic schemas."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.enums import (
    Channel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
)


class NotificationCreate(BaseModel):
    """Operator-requested notification."""

    deadline_id: str | None = None
    risk_assessment_id: str | None = None
    recipient_type: RecipientType = RecipientType.INDIVIDUAL
    recipient_ref: str = Field(..., min_length=1, max_length=100)
    notification_type: NotificationType = NotificationType.STATUS_UPDATE
    priority: NotificationPriority = NotificationPriority.MEDIUM
    channels: list[Channel] = Field(..., min_length=1)
    subject: str | None = Field(None, max_length=255)
    message: str = Field(..., min_length=1)
    requires_response: bool = False
    scheduled_for: datetime | None = None

    @field_validator("channels")
    @classmethod
    def dedupe_channels(cls, v: list[Channel]) -> list[Channel]:
        return list(dict.fromkeys(v))

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be blank")
        return v

    @field_validator("scheduled_for")
    @classmethod
    def naive_utc(cls, v: datetime | None) -> datetime | None:
        """Store times as naive UTC."""
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class DeliveryAttemptResponse(BaseModel):
    """One channel outcome of a dispatch attempt."""

    model_config = ConfigDict(from_attributes=True)

    attempt_id: str
    channel: str
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    failure_reason: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    confirmed_at: datetime | None = None


class NotificationResponse(BaseModel):
    """Alert notification as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    deadline_id: str | None = None
    risk_assessment_id: str | None = None
    parent_notification_id: str | None = None
    recipient_type: RecipientType
    recipient_ref: str
    recipient_id: str | None = None
    recipient_name: str | None = None
    notification_type: NotificationType
    priority: NotificationPriority
    channels: list[Channel]
    subject: str | None = None
    message: str
    short_message: str | None = None
    requires_response: bool
    status: NotificationStatus
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    acknowledged_at: datetime | None = None
    response_content: str | None = None
    error_message: str | None = None
    retry_count: int
    escalation_level: int = Field(..., ge=0, le=3)
    escalated_at: datetime | None = None
    created_at: datetime | None = None


class NotificationDetail(NotificationResponse):
    """Notification with its delivery attempts."""

    attempts: list[DeliveryAttemptResponse] = Field(default_factory=list)


class NotificationList(BaseModel):
    """Paginated notification listing."""

    items: list[NotificationResponse]
    total: int
    limit: int
    offset: int


class AcknowledgeRequest(BaseModel):
    """Recipient acknowledgment."""

    response: str | None = Field(None, max_length=2000)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class DeliveryReceipt(BaseModel):
    """Asynchronous delivery confirmation from a channel provider."""

    attempt_id: str = Field(..., min_length=1)
    channel: Channel
    provider_message_id: str | None = None
    success: bool = True


class ReceiptResponse(BaseModel):
    applied: bool


class EscalationResponse(BaseModel):
    """Outcome of an escalation command."""

    notification: NotificationResponse
    successors: list[NotificationResponse] = Field(default_factory=list)
    exhausted: bool = False
