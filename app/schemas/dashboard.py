"""Dashboard and scheduler Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class NotificationSummary(BaseModel):
    """Aggregate counts across notifications and current risk."""

    total_notifications: int
    by_status: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
    by_channel: dict[str, int] = Field(default_factory=dict)
    by_risk_level: dict[str, int] = Field(default_factory=dict)
    awaiting_acknowledgment: int = 0
    escalated: int = 0
    generated_at: datetime


class TickResponse(BaseModel):
    """Outcome of one scheduler pass."""

    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    cancelled: int = 0
    rescored: int = 0
    composed: int = 0
    dispatched: int = 0
    delivered: int = 0
    escalated: int = 0
    data_unavailable: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
