"""Pydantic schemas for API request/response validation."""

from app.schemas.dashboard import NotificationSummary, TickResponse
from app.schemas.notification import (
    AcknowledgeRequest,
    DeliveryReceipt,
    NotificationCreate,
    NotificationDetail,
    NotificationResponse,
)
from app.schemas.risk import RiskAssessmentResponse, RiskFactor

__all__ = [
    "AcknowledgeRequest",
    "DeliveryReceipt",
    "NotificationCreate",
    "NotificationDetail",
    "NotificationResponse",
    "NotificationSummary",
    "RiskAssessmentResponse",
    "RiskFactor",
    "TickResponse",
]
