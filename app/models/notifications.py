"""Alert notification models.

Tracks each attempt to inform a recipient about a deadline or risk
change, its delivery status per channel, retry and escalation state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.core.clock import utcnow
from app.core.database import Base
from app.core.exceptions import InvalidTransitionError
from app.schemas.enums import DELIVERED_STATUSES, NotificationStatus

MAX_ESCALATION_LEVEL = 3

_S = NotificationStatus

# Legal lifecycle edges; anything else raises InvalidTransitionError
ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    _S.PENDING: frozenset({_S.SCHEDULED, _S.SENT, _S.CANCELLED}),
    _S.SCHEDULED: frozenset({_S.SENT, _S.CANCELLED}),
    _S.SENT: frozenset({_S.DELIVERED, _S.FAILED, _S.CANCELLED}),
    # delivered/read -> failed only when left unanswered at the top escalation level
    _S.DELIVERED: frozenset({_S.READ, _S.ACKNOWLEDGED, _S.FAILED, _S.CANCELLED}),
    _S.FAILED: frozenset({_S.SCHEDULED, _S.CANCELLED}),
    _S.READ: frozenset({_S.ACKNOWLEDGED, _S.FAILED, _S.CANCELLED}),
    _S.ACKNOWLEDGED: frozenset(),
    _S.CANCELLED: frozenset(),
}


class AlertNotification(Base):
    """One attempt to inform a single recipient.

    Identity fields (origin, recipient, type, channels, message) are
    written once by the composer. Status and attempt fields are mutated by
    the dispatcher, escalation fields by the escalation manager.
    """

    __tablename__ = "alert_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # Origin
    deadline_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("compliance_deadlines.id"), nullable=True
    )
    risk_assessment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("risk_assessments.id"), nullable=True
    )
    parent_notification_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("alert_notifications.id"), nullable=True
    )

    # Recipient
    recipient_type: Mapped[str] = mapped_column(String(30), nullable=False)
    recipient_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # channel -> address
    recipient_contacts: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)

    # Content
    notification_type: Mapped[str] = mapped_column(String(40), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    short_message: Mapped[str | None] = mapped_column(String(160), nullable=True)
    requires_response: Mapped[bool] = mapped_column(Boolean, default=False)

    # Delivery status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=_S.PENDING.value)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    response_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_attempt_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Retry / escalation
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    attempts: Mapped[list[DeliveryAttempt]] = relationship(
        "DeliveryAttempt",
        back_populates="notification",
        order_by="DeliveryAttempt.started_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_alert_notifications_status_scheduled", "status", "scheduled_for"),
        Index("ix_alert_notifications_deadline_type", "deadline_id", "notification_type"),
        Index("ix_alert_notifications_priority", "priority"),
    )

    def __init__(self, **kwargs: Any) -> None:
        # Column defaults only apply at flush; the lifecycle methods need them now
        kwargs.setdefault("status", _S.PENDING.value)
        kwargs.setdefault("retry_count", 0)
        kwargs.setdefault("escalation_level", 0)
        kwargs.setdefault("requires_response", False)
        kwargs.setdefault("recipient_contacts", {})
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<AlertNotification {self.notification_type} -> {self.recipient_ref} [{self.status}]>"

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    @validates("channels")
    def _validate_channels(self, key: str, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("A notification needs at least one channel")
        return list(dict.fromkeys(value))

    @validates("escalation_level")
    def _validate_escalation_level(self, key: str, value: int) -> int:
        current = self.escalation_level or 0
        if value < current:
            raise ValueError("escalation_level cannot decrease")
        if value > MAX_ESCALATION_LEVEL:
            raise ValueError(f"escalation_level cannot exceed {MAX_ESCALATION_LEVEL}")
        return value

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def status_enum(self) -> NotificationStatus:
        return NotificationStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        """No further automated transition will happen."""
        if self.status in (_S.ACKNOWLEDGED.value, _S.CANCELLED.value):
            return True
        # A failed notification that was escalated (or exhausted) is handed off
        return self.status == _S.FAILED.value and self.escalated_at is not None

    @property
    def is_resolved(self) -> bool:
        """Nothing more is expected of this notification.

        Used for composer deduplication: terminal notifications are
        resolved, and so are delivered ones that need no response.
        """
        if self.is_terminal:
            return True
        return (
            not self.requires_response
            and self.status in (_S.DELIVERED.value, _S.READ.value)
        )

    def can_retry(self, max_retries: int) -> bool:
        """Failed, not handed off, and retry budget left."""
        return (
            self.status == _S.FAILED.value
            and self.escalated_at is None
            and self.retry_count < max_retries
        )

    def retries_exhausted(self, max_retries: int) -> bool:
        return (
            self.status == _S.FAILED.value
            and self.escalated_at is None
            and self.retry_count >= max_retries
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition_to(self, new_status: NotificationStatus) -> None:
        """Move to a new status, enforcing the lifecycle graph."""
        current = self.status_enum
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move notification from {current.value} to {new_status.value}",
                notification_id=self.id,
                status=current.value,
            )
        self.status = new_status.value
        if new_status in DELIVERED_STATUSES:
            self.retry_count = 0

    def mark_scheduled(self, when: datetime) -> None:
        self.transition_to(_S.SCHEDULED)
        self.scheduled_for = when

    def mark_sent(self, attempt_id: str, now: datetime) -> None:
        """Record the start of a dispatch attempt."""
        self.transition_to(_S.SENT)
        self.current_attempt_id = attempt_id
        self.sent_at = now

    def mark_delivered(self, now: datetime) -> None:
        self.transition_to(_S.DELIVERED)
        self.delivered_at = now
        self.error_message = None

    def mark_failed(self, error_message: str, next_retry_at: datetime | None) -> None:
        """Record a failed attempt; retry_count grows by exactly one."""
        self.transition_to(_S.FAILED)
        self.retry_count += 1
        self.error_message = error_message
        self.scheduled_for = next_retry_at

    def mark_read(self, now: datetime) -> None:
        self.transition_to(_S.READ)
        self.read_at = now

    def mark_acknowledged(self, now: datetime, response: str | None = None) -> None:
        self.transition_to(_S.ACKNOWLEDGED)
        self.acknowledged_at = now
        if self.read_at is None:
            self.read_at = now
        if response:
            self.response_content = response

    def mark_cancelled(self, reason: str | None = None) -> None:
        self.transition_to(_S.CANCELLED)
        self.scheduled_for = None
        if reason:
            self.error_message = reason

    def record_escalation(self, now: datetime, cap: int = MAX_ESCALATION_LEVEL) -> int:
        """Raise the escalation level by one (capped) and mark the hand-off."""
        self.escalation_level = min(self.escalation_level + 1, cap)
        self.escalated_at = now
        return self.escalation_level

    def mark_exhausted(self, now: datetime, reason: str = "escalation exhausted") -> None:
        """Terminal failure at the highest escalation level."""
        if self.status != _S.FAILED.value:
            self.transition_to(_S.FAILED)
        self.scheduled_for = None
        self.escalated_at = now
        self.error_message = reason


class DeliveryAttempt(Base):
    """Outcome of one channel within one dispatch attempt."""

    __tablename__ = "delivery_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("alert_notifications.id"), nullable=False
    )
    attempt_id: Mapped[str] = mapped_column(String(36), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    notification: Mapped[AlertNotification] = relationship(
        "AlertNotification", back_populates="attempts"
    )

    __table_args__ = (
        Index("ix_delivery_attempts_attempt", "attempt_id"),
        Index("ix_delivery_attempts_notification", "notification_id"),
    )

    def __repr__(self) -> str:
        outcome = "ok" if self.success else (self.failure_reason or "failed")
        return f"<DeliveryAttempt {self.channel} {self.attempt_id[:8]} [{outcome}]>"
