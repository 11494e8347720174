"""Dashboard aggregates over notifications and current risk."""

import logging
from collections import Counter

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.notifications import AlertNotification
from app.models.risk import RiskAssessment
from app.schemas.dashboard import NotificationSummary
from app.schemas.enums import NotificationStatus

logger = logging.getLogger(__name__)


class DashboardService:
    """Service for summary counts."""

    def __init__(self, db: Session):
        self.db = db

    def _count_by(self, column) -> dict[str, int]:
        rows = self.db.query(column, func.count()).group_by(column).all()
        return {str(key): count for key, count in rows}

    def get_summary(self) -> NotificationSummary:
        """Counts by status, priority, channel and current risk level."""
        by_channel: Counter[str] = Counter()
        for (channels,) in self.db.query(AlertNotification.channels).all():
            by_channel.update(channels or [])

        by_risk_level = dict(
            self.db.query(RiskAssessment.risk_level, func.count())
            .filter(RiskAssessment.superseded_by.is_(None))
            .group_by(RiskAssessment.risk_level)
            .all()
        )

        awaiting = (
            self.db.query(func.count(AlertNotification.id))
            .filter(
                AlertNotification.requires_response.is_(True),
                AlertNotification.acknowledged_at.is_(None),
                AlertNotification.status.in_([
                    NotificationStatus.SENT.value,
                    NotificationStatus.DELIVERED.value,
                    NotificationStatus.READ.value,
                ]),
            )
            .scalar()
        )
        escalated = (
            self.db.query(func.count(AlertNotification.id))
            .filter(AlertNotification.escalated_at.isnot(None))
            .scalar()
        )
        total = self.db.query(func.count(AlertNotification.id)).scalar()

        return NotificationSummary(
            total_notifications=total or 0,
            by_status=self._count_by(AlertNotification.status),
            by_priority=self._count_by(AlertNotification.priority),
            by_channel=dict(by_channel),
            by_risk_level=by_risk_level,
            awaiting_acknowledgment=awaiting or 0,
            escalated=escalated or 0,
            generated_at=utcnow(),
        )
