"""Database models module."""

from app.models.deadline import ComplianceDeadline
from app.models.notifications import AlertNotification, DeliveryAttempt
from app.models.risk import RiskAssessment

__all__ = [
    "ComplianceDeadline",
    "RiskAssessment",
    "AlertNotification",
    "DeliveryAttempt",
]
