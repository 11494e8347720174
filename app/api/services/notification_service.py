"""Notification commands and queries.

Commands that change a notification's status take its lock, so they
serialize with the dispatcher and the escalation manager.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from app.api.services.composer import DeadlineEvent, NotificationComposer, NotificationRule, RecipientTarget
from app.api.services.dispatch_service import DeliveryDispatcher, DispatchOutcome
from app.api.services.escalation_service import EscalationManager, EscalationResult
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.exceptions import DataUnavailable, InvalidTransitionError, NotFoundError, ValidationError
from app.core.locks import EntityLocks
from app.models.deadline import ComplianceDeadline
from app.models.notifications import AlertNotification
from app.models.risk import RiskAssessment
from app.schemas.enums import DeadlineStatus, NotificationStatus, NotificationType
from app.schemas.notification import NotificationCreate

logger = logging.getLogger(__name__)

# Still open work when the deadline completes
CANCELLABLE_ON_COMPLETION = (
    NotificationStatus.PENDING.value,
    NotificationStatus.SCHEDULED.value,
    NotificationStatus.SENT.value,
    NotificationStatus.FAILED.value,
)

# Awaiting a response that completion makes moot
AWAITING_ON_COMPLETION = (NotificationStatus.DELIVERED.value, NotificationStatus.READ.value)


def _open_on_completion(notification: AlertNotification) -> bool:
    if notification.status in CANCELLABLE_ON_COMPLETION:
        return True
    return notification.requires_response and notification.status in AWAITING_ON_COMPLETION


@dataclass
class NotificationFilter:
    status: NotificationStatus | None = None
    priority: str | None = None
    channel: str | None = None
    deadline_id: str | None = None
    recipient_id: str | None = None
    limit: int = 100
    offset: int = 0


@dataclass
class CancellationResult:
    cancelled_ids: list[str] = field(default_factory=list)
    confirmations: list[AlertNotification] = field(default_factory=list)


class NotificationService:
    """Service for notification lifecycle commands."""

    def __init__(
        self,
        settings: Settings,
        composer: NotificationComposer,
        dispatcher: DeliveryDispatcher,
        escalation: EscalationManager,
        session_factory=get_db_context,
        locks: EntityLocks | None = None,
    ) -> None:
        self.settings = settings
        self.composer = composer
        self.dispatcher = dispatcher
        self.escalation = escalation
        self.locks = locks or EntityLocks()
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_notification(self, notification_id: str) -> AlertNotification:
        with self._session_factory() as db:
            notification = (
                db.query(AlertNotification)
                .options(selectinload(AlertNotification.attempts))
                .filter(AlertNotification.id == notification_id)
                .first()
            )
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found", notification_id=notification_id)
        return notification

    def list_notifications(self, filter: NotificationFilter | None = None) -> tuple[list[AlertNotification], int]:
        """Notifications matching the filter, newest first, with the total count."""
        filter = filter or NotificationFilter()
        with self._session_factory() as db:
            query = db.query(AlertNotification)
            if filter.status:
                query = query.filter(AlertNotification.status == NotificationStatus(filter.status).value)
            if filter.priority:
                query = query.filter(AlertNotification.priority == filter.priority)
            if filter.deadline_id:
                query = query.filter(AlertNotification.deadline_id == filter.deadline_id)
            if filter.recipient_id:
                query = query.filter(AlertNotification.recipient_id == filter.recipient_id)

            rows = query.order_by(AlertNotification.created_at.desc()).all()

        # Channel lists are JSON; filter in Python to stay portable across backends
        if filter.channel:
            rows = [n for n in rows if filter.channel in (n.channels or [])]
        total = len(rows)
        return rows[filter.offset: filter.offset + filter.limit], total

    def due_for_dispatch(self, now: datetime | None = None) -> list[str]:
        """Ids of notifications whose (re)send is due."""
        now = now or utcnow()
        with self._session_factory() as db:
            rows = (
                db.query(AlertNotification)
                .filter(
                    or_(AlertNotification.scheduled_for.is_(None), AlertNotification.scheduled_for <= now),
                    AlertNotification.status.in_([
                        NotificationStatus.PENDING.value,
                        NotificationStatus.SCHEDULED.value,
                        NotificationStatus.FAILED.value,
                    ]),
                )
                .order_by(AlertNotification.created_at)
                .all()
            )
            return [
                n.id for n in rows
                if n.status != NotificationStatus.FAILED.value
                or (n.scheduled_for is not None and n.can_retry(self.settings.max_retries))
            ]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_notification(
        self, spec: NotificationCreate | dict, now: datetime | None = None
    ) -> list[AlertNotification]:
        """Compose an operator-requested notification and dispatch it.

        A spec with ``scheduled_for`` in the future is left scheduled for
        the scheduler to pick up.

        Raises:
            ValidationError: malformed spec or unknown deadline/assessment
            RecipientResolutionFailed: recipients could not be resolved
        """
        now = now or utcnow()
        if not isinstance(spec, NotificationCreate):
            try:
                spec = NotificationCreate.model_validate(spec)
            except PydanticValidationError as e:
                raise ValidationError("Invalid notification spec", errors=e.errors(include_url=False)) from e

        with self._session_factory() as db:
            if spec.deadline_id and db.get(ComplianceDeadline, spec.deadline_id) is None:
                raise ValidationError(f"Unknown deadline {spec.deadline_id}", deadline_id=spec.deadline_id)
            if spec.risk_assessment_id and db.get(RiskAssessment, spec.risk_assessment_id) is None:
                raise ValidationError(
                    f"Unknown risk assessment {spec.risk_assessment_id}",
                    risk_assessment_id=spec.risk_assessment_id,
                )

        rule = NotificationRule(
            notification_type=spec.notification_type,
            priority=spec.priority,
            channels=tuple(spec.channels),
            requires_response=spec.requires_response,
        )
        scheduled_for = spec.scheduled_for if spec.scheduled_for and spec.scheduled_for > now else None
        notifications = await self.composer.compose_custom(
            RecipientTarget(spec.recipient_type, spec.recipient_ref),
            rule,
            spec.subject,
            spec.message,
            deadline_id=spec.deadline_id,
            risk_assessment_id=spec.risk_assessment_id,
            scheduled_for=scheduled_for,
        )

        if scheduled_for is not None:
            for notification in notifications:
                await self._transition(notification.id, lambda n: n.mark_scheduled(scheduled_for))
            return [self.get_notification(n.id) for n in notifications]

        await self.dispatcher.dispatch_many([n.id for n in notifications], now)
        return [self.get_notification(n.id) for n in notifications]

    async def resend_notification(self, notification_id: str, now: datetime | None = None) -> AlertNotification:
        """Retry a failed notification immediately.

        Raises:
            InvalidTransitionError: not failed, or already handed to escalation
        """
        now = now or utcnow()

        def reschedule(n: AlertNotification) -> None:
            if n.status != NotificationStatus.FAILED.value or n.is_terminal:
                raise InvalidTransitionError(
                    f"Only failed, non-escalated notifications can be resent (status {n.status})",
                    notification_id=n.id,
                    status=n.status,
                )
            n.mark_scheduled(now)

        await self._transition(notification_id, reschedule)
        await self.dispatcher.dispatch(notification_id, now)
        return self.get_notification(notification_id)

    async def acknowledge_notification(
        self, notification_id: str, response: str | None = None, now: datetime | None = None
    ) -> AlertNotification:
        now = now or utcnow()
        return await self._transition(notification_id, lambda n: n.mark_acknowledged(now, response))

    async def mark_notification_read(self, notification_id: str, now: datetime | None = None) -> AlertNotification:
        now = now or utcnow()
        return await self._transition(notification_id, lambda n: n.mark_read(now))

    async def cancel_notification(self, notification_id: str, reason: str | None = None) -> AlertNotification:
        return await self._transition(notification_id, lambda n: n.mark_cancelled(reason or "Cancelled by operator"))

    async def escalate_notification(self, notification_id: str, now: datetime | None = None) -> EscalationResult:
        return await self.escalation.escalate(notification_id, now, force=True)

    async def confirm_delivery(
        self,
        attempt_id: str,
        channel: str,
        provider_message_id: str | None,
        success: bool,
        now: datetime | None = None,
    ) -> bool:
        return await self.dispatcher.confirm_delivery(attempt_id, channel, provider_message_id, success, now)

    async def dispatch_due(self, now: datetime | None = None) -> list[DispatchOutcome]:
        return await self.dispatcher.dispatch_many(self.due_for_dispatch(now), now)

    async def cancel_for_completed_deadlines(self, now: datetime | None = None) -> CancellationResult:
        """Cancel open notifications of completed deadlines.

        Delivered or read notifications still waiting for a response are
        closed out too, so they never escalate.
        Each affected deadline's owner gets one completion confirmation.
        """
        now = now or utcnow()
        with self._session_factory() as db:
            rows = (
                db.query(AlertNotification.id, AlertNotification.deadline_id)
                .join(ComplianceDeadline, ComplianceDeadline.id == AlertNotification.deadline_id)
                .filter(
                    ComplianceDeadline.status == DeadlineStatus.COMPLETED.value,
                    or_(
                        AlertNotification.status.in_(CANCELLABLE_ON_COMPLETION),
                        (AlertNotification.requires_response.is_(True))
                        & (AlertNotification.status.in_(AWAITING_ON_COMPLETION)),
                    ),
                    AlertNotification.notification_type != NotificationType.COMPLETION_CONFIRMATION.value,
                )
                .all()
            )

        result = CancellationResult()
        deadline_ids: list[str] = []
        for notification_id, deadline_id in rows:
            async with self.locks.notification(notification_id):
                with self._session_factory() as db:
                    notification = db.get(AlertNotification, notification_id)
                    if notification.is_terminal or not _open_on_completion(notification):
                        continue
                    notification.mark_cancelled("Deadline completed")
            result.cancelled_ids.append(notification_id)
            if deadline_id not in deadline_ids:
                deadline_ids.append(deadline_id)

        for deadline_id in deadline_ids:
            with self._session_factory() as db:
                deadline = db.get(ComplianceDeadline, deadline_id)
            if deadline is None:
                raise DataUnavailable(f"Deadline {deadline_id} not found", deadline_id=deadline_id)
            result.confirmations.extend(
                await self.composer.compose_for_event(
                    DeadlineEvent(deadline, NotificationType.COMPLETION_CONFIRMATION), now
                )
            )

        if result.cancelled_ids:
            logger.info(
                f"Cancelled {len(result.cancelled_ids)} notification(s) for "
                f"{len(deadline_ids)} completed deadline(s)"
            )
        return result

    async def _transition(self, notification_id: str, apply) -> AlertNotification:
        async with self.locks.notification(notification_id):
            with self._session_factory() as db:
                notification = db.get(AlertNotification, notification_id)
                if notification is None:
                    raise NotFoundError(f"Notification {notification_id} not found", notification_id=notification_id)
                apply(notification)
                logger.info(f"Notification {notification_id} is now {notification.status}")
        return self.get_notification(notification_id)
