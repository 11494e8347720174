"""Escalation manager.

A notification is escalated when its delivery retries are exhausted, or
when it needs a response and none arrived within the window for its
priority. Escalation hands the alert to the next recipient tier:
individual -> role -> department -> all stakeholders.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_

from app.api.services.composer import NotificationComposer, RecipientTarget
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.exceptions import (
    EscalationExhausted,
    InvalidTransitionError,
    NotFoundError,
    RecipientResolutionFailed,
)
from app.core.locks import EntityLocks
from app.core.observability import EventType, ObservabilityEvent, ObservabilitySink, Severity
from app.models.deadline import ComplianceDeadline
from app.models.notifications import AlertNotification
from app.schemas.enums import DeadlineStatus, NotificationStatus, RecipientType

logger = logging.getLogger(__name__)

AWAITING_RESPONSE_STATUSES = (NotificationStatus.DELIVERED.value, NotificationStatus.READ.value)


class EscalationTargetPolicy(ABC):
    """Chooses who receives an escalated notification."""

    @abstractmethod
    def next_target(self, notification: AlertNotification) -> RecipientTarget:
        ...


class TierEscalationPolicy(EscalationTargetPolicy):
    """Walks up the recipient tiers.

    An individual escalates to the configured escalation role, a role to
    the configured department, a department to every stakeholder.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def next_target(self, notification: AlertNotification) -> RecipientTarget:
        current = RecipientType(notification.recipient_type)
        if current == RecipientType.INDIVIDUAL:
            return RecipientTarget(RecipientType.ROLE, self.settings.escalation_role_ref)
        if current == RecipientType.ROLE:
            return RecipientTarget(RecipientType.DEPARTMENT, self.settings.escalation_department_ref)
        return RecipientTarget(RecipientType.ALL_STAKEHOLDERS, notification.deadline_id or "all")


class FixedRoleEscalationPolicy(EscalationTargetPolicy):
    """Always escalates to one role, e.g. a compliance officer on call."""

    def __init__(self, role_ref: str) -> None:
        self.role_ref = role_ref

    def next_target(self, notification: AlertNotification) -> RecipientTarget:
        return RecipientTarget(RecipientType.ROLE, self.role_ref)


@dataclass
class EscalationResult:
    notification: AlertNotification
    successors: list[AlertNotification] = field(default_factory=list)
    exhausted: bool = False


class EscalationManager:
    """Detects notifications that need escalation and escalates them."""

    def __init__(
        self,
        settings: Settings,
        composer: NotificationComposer,
        sink: ObservabilitySink,
        session_factory=get_db_context,
        locks: EntityLocks | None = None,
        target_policy: EscalationTargetPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.composer = composer
        self.sink = sink
        self.locks = locks or EntityLocks()
        self.target_policy = target_policy or TierEscalationPolicy(settings)
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def is_candidate(self, notification: AlertNotification, now: datetime) -> bool:
        """Whether a notification must be escalated now."""
        if notification.retries_exhausted(self.settings.max_retries):
            return True
        return self._response_overdue(notification, now)

    def _response_overdue(self, notification: AlertNotification, now: datetime) -> bool:
        if not notification.requires_response or notification.escalated_at is not None:
            return False
        if notification.status not in AWAITING_RESPONSE_STATUSES or notification.acknowledged_at:
            return False
        if notification.sent_at is None:
            return False
        window = timedelta(minutes=self.settings.get_response_window_minutes(notification.priority))
        return notification.sent_at + window <= now

    def find_candidates(self, now: datetime | None = None) -> list[str]:
        now = now or utcnow()
        with self._session_factory() as db:
            rows = (
                db.query(AlertNotification)
                .outerjoin(ComplianceDeadline, ComplianceDeadline.id == AlertNotification.deadline_id)
                .filter(
                    AlertNotification.escalated_at.is_(None),
                    or_(
                        ComplianceDeadline.id.is_(None),
                        ComplianceDeadline.status != DeadlineStatus.COMPLETED.value,
                    ),
                    or_(
                        AlertNotification.status == NotificationStatus.FAILED.value,
                        (AlertNotification.requires_response.is_(True))
                        & (AlertNotification.status.in_(AWAITING_RESPONSE_STATUSES)),
                    ),
                )
                .order_by(AlertNotification.created_at)
                .all()
            )
            return [n.id for n in rows if self.is_candidate(n, now)]

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> list[EscalationResult]:
        """Escalate every current candidate."""
        now = now or utcnow()
        results = []
        for notification_id in self.find_candidates(now):
            try:
                result = await self.escalate(notification_id, now)
            except RecipientResolutionFailed as e:
                logger.warning(f"Escalation of {notification_id} deferred: {e.message}")
                continue
            if result is not None:
                results.append(result)
        if results:
            logger.info(f"Escalation sweep handled {len(results)} notification(s)")
        return results

    async def escalate(
        self, notification_id: str, now: datetime | None = None, force: bool = False
    ) -> EscalationResult | None:
        """Escalate one notification.

        Without ``force`` the notification must still be a candidate,
        otherwise None is returned. With ``force`` (operator command) any
        non-terminal, not yet escalated notification is escalated.

        Raises:
            NotFoundError: unknown notification
            InvalidTransitionError: forced escalation of a terminal or
                already escalated notification
            RecipientResolutionFailed: the next tier could not be resolved
            EscalationExhausted: forced escalation of a notification already
                at the highest level (it is marked failed first)
        """
        now = now or utcnow()

        async with self.locks.notification(notification_id):
            with self._session_factory() as db:
                notification = self._load(db, notification_id)
                if not self._eligible(notification, now, force):
                    return None
                if notification.escalation_level >= self.settings.max_escalation_level:
                    notification.mark_exhausted(now)
                    exhausted = notification
                else:
                    exhausted = None
                    snapshot = notification

        if exhausted is not None:
            error = await self._emit_exhausted(exhausted)
            if force:
                raise error
            return EscalationResult(exhausted, exhausted=True)

        level = snapshot.escalation_level + 1
        target = self.target_policy.next_target(snapshot)
        successors = await self.composer.prepare_escalation(snapshot, target, level)

        async with self.locks.notification(notification_id):
            with self._session_factory() as db:
                notification = self._load(db, notification_id)
                # State may have moved (acknowledged, cancelled) while recipients resolved
                if not self._eligible(notification, now, force):
                    return None
                notification.record_escalation(now, self.settings.max_escalation_level)
                db.add_all(successors)

        logger.warning(
            f"Escalated notification {notification_id} to level {level} "
            f"({target.recipient_type.value} '{target.ref}', {len(successors)} recipient(s))"
        )
        return EscalationResult(notification, successors)

    @staticmethod
    def _load(db, notification_id: str) -> AlertNotification:
        notification = db.get(AlertNotification, notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found", notification_id=notification_id)
        return notification

    def _eligible(self, notification: AlertNotification, now: datetime, force: bool) -> bool:
        if not force:
            return self.is_candidate(notification, now)
        if notification.is_terminal or notification.escalated_at is not None:
            raise InvalidTransitionError(
                f"Notification {notification.id} cannot be escalated from {notification.status}",
                notification_id=notification.id,
                status=notification.status,
            )
        return True

    async def _emit_exhausted(self, notification: AlertNotification) -> EscalationExhausted:
        error = EscalationExhausted(
            f"Notification {notification.id} exhausted escalation at level {notification.escalation_level}",
            notification_id=notification.id,
            escalation_level=notification.escalation_level,
        )
        logger.error(error.message)
        await self.sink.emit(ObservabilityEvent(
            event_type=EventType.ESCALATION_EXHAUSTED,
            title="Compliance alert escalation exhausted",
            message=(
                f"Notification {notification.id} ({notification.notification_type}) "
                f"could not be resolved at escalation level {notification.escalation_level}."
            ),
            severity=Severity.CRITICAL,
            notification_id=notification.id,
            deadline_id=notification.deadline_id,
            metadata={
                "priority": notification.priority,
                "recipient_type": notification.recipient_type,
                "recipient_ref": notification.recipient_ref,
                "error": error.to_dict(),
            },
        ))
        return error
