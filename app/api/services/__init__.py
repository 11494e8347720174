"""API services module."""

from app.api.services.composer import NotificationComposer, NotificationPolicy
from app.api.services.dashboard_service import DashboardService
from app.api.services.deadline_store import DeadlineStore, SqlDeadlineStore
from app.api.services.dispatch_service import DeliveryDispatcher
from app.api.services.escalation_service import EscalationManager, TierEscalationPolicy
from app.api.services.notification_service import NotificationService
from app.api.services.risk_service import RiskScorer, RiskService

__all__ = [
    "DeadlineStore",
    "SqlDeadlineStore",
    "RiskScorer",
    "RiskService",
    "NotificationComposer",
    "NotificationPolicy",
    "DeliveryDispatcher",
    "EscalationManager",
    "TierEscalationPolicy",
    "NotificationService",
    "DashboardService",
]
