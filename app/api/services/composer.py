"""Notification composer.

Turns a risk assessment or a deadline event into one pending
notification per resolved recipient, choosing channels and priority
from a ``NotificationPolicy``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.channels import SHORT_MESSAGE_LIMIT, shorten
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.directory import Recipient, RecipientDirectory
from app.core.exceptions import RecipientResolutionFailed
from app.models.deadline import ComplianceDeadline
from app.models.notifications import AlertNotification
from app.models.risk import RiskAssessment
from app.schemas.enums import (
    Channel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
    RiskLevel,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationRule:
    """How one kind of notification is delivered."""

    notification_type: NotificationType
    priority: NotificationPriority
    channels: tuple[Channel, ...]
    requires_response: bool = False


@dataclass
class NotificationPolicy:
    """Channel and priority selection, keyed by risk level or event type."""

    risk_rules: dict[RiskLevel, NotificationRule] = field(default_factory=lambda: {
        RiskLevel.CRITICAL: NotificationRule(
            NotificationType.RISK_ALERT,
            NotificationPriority.CRITICAL,
            (Channel.EMAIL, Channel.SMS, Channel.PUSH),
            requires_response=True,
        ),
        RiskLevel.HIGH: NotificationRule(
            NotificationType.RISK_ALERT,
            NotificationPriority.HIGH,
            (Channel.EMAIL, Channel.PUSH),
            requires_response=True,
        ),
        RiskLevel.MEDIUM: NotificationRule(
            NotificationType.RISK_ALERT,
            NotificationPriority.MEDIUM,
            (Channel.EMAIL, Channel.IN_APP),
        ),
        RiskLevel.LOW: NotificationRule(
            NotificationType.STATUS_UPDATE,
            NotificationPriority.LOW,
            (Channel.IN_APP,),
        ),
    })
    event_rules: dict[NotificationType, NotificationRule] = field(default_factory=lambda: {
        NotificationType.OVERDUE_WARNING: NotificationRule(
            NotificationType.OVERDUE_WARNING,
            NotificationPriority.URGENT,
            (Channel.EMAIL, Channel.SMS, Channel.PUSH),
            requires_response=True,
        ),
        NotificationType.DEADLINE_REMINDER: NotificationRule(
            NotificationType.DEADLINE_REMINDER,
            NotificationPriority.MEDIUM,
            (Channel.EMAIL, Channel.IN_APP),
        ),
        NotificationType.COMPLETION_CONFIRMATION: NotificationRule(
            NotificationType.COMPLETION_CONFIRMATION,
            NotificationPriority.LOW,
            (Channel.EMAIL, Channel.IN_APP),
        ),
        NotificationType.STATUS_UPDATE: NotificationRule(
            NotificationType.STATUS_UPDATE,
            NotificationPriority.LOW,
            (Channel.IN_APP,),
        ),
    })
    # Added to every escalation's channel set
    escalation_channels: tuple[Channel, ...] = (Channel.EMAIL, Channel.SMS, Channel.PUSH)

    def rule_for_risk(self, level: RiskLevel | str) -> NotificationRule:
        return self.risk_rules[RiskLevel(level)]

    def rule_for_event(self, notification_type: NotificationType | str) -> NotificationRule:
        return self.event_rules[NotificationType(notification_type)]


@dataclass(frozen=True)
class DeadlineEvent:
    """A deadline lifecycle event that warrants a notification."""

    deadline: ComplianceDeadline
    notification_type: NotificationType


@dataclass(frozen=True)
class RecipientTarget:
    recipient_type: RecipientType
    ref: str


def select_channels(wanted: tuple[Channel, ...] | list[Channel], recipient: Recipient) -> list[str]:
    """Channels from ``wanted`` the recipient can be reached on.

    In-app needs no address. If nothing else is reachable the
    notification falls back to in-app so it is never channel-less.
    """
    channels = [
        Channel(c).value for c in wanted
        if Channel(c) == Channel.IN_APP or recipient.contacts.get(Channel(c).value)
    ]
    return channels or [Channel.IN_APP.value]


def recipient_contacts(recipient: Recipient, channels: list[str]) -> dict[str, str]:
    contacts = {c: recipient.contacts[c] for c in channels if recipient.contacts.get(c)}
    if Channel.IN_APP.value in channels:
        contacts.setdefault(Channel.IN_APP.value, recipient.contacts.get("in_app") or recipient.id)
    return contacts


class NotificationComposer:
    """Builds pending notifications.

    Repeated composition for the same (deadline, notification type) pair
    is suppressed while an earlier notification for that pair is
    unresolved, so scheduler passes do not flood recipients.
    """

    def __init__(
        self,
        settings: Settings,
        directory: RecipientDirectory,
        session_factory=get_db_context,
        policy: NotificationPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.policy = policy or NotificationPolicy()
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def compose_for_assessment(
        self,
        assessment: RiskAssessment,
        deadline: ComplianceDeadline,
        now: datetime | None = None,
    ) -> list[AlertNotification]:
        """Compose risk notifications for a new assessment."""
        level = RiskLevel(assessment.risk_level)
        rule = self.policy.rule_for_risk(level)

        subject = f"[{level.value.upper()} RISK] {deadline.title}"
        days = deadline.days_remaining(now or assessment.computed_at)
        message = (
            f"Compliance deadline '{deadline.title}' ({deadline.category}) is at "
            f"{level.value} risk with a score of {assessment.risk_score:.0f}/100. "
            f"It is due {deadline.due_at:%Y-%m-%d %H:%M} UTC "
            f"({self._describe_days(days)}) and is {deadline.completion_percentage}% complete."
        )
        short = f"{level.value.upper()} risk: {deadline.title} due {deadline.due_at:%Y-%m-%d}, {deadline.completion_percentage}% done"

        targets = [RecipientTarget(RecipientType.INDIVIDUAL, deadline.owner_id)]
        if level == RiskLevel.CRITICAL:
            targets.extend(
                RecipientTarget(RecipientType.ROLE, role) for role in self.settings.critical_risk_extra_roles
            )

        return await self._compose(
            deadline_id=deadline.id,
            risk_assessment_id=assessment.id,
            rule=rule,
            targets=targets,
            subject=subject,
            message=message,
            short_message=short,
        )

    async def compose_for_event(self, event: DeadlineEvent, now: datetime | None = None) -> list[AlertNotification]:
        """Compose the notification for a deadline event."""
        deadline = event.deadline
        rule = self.policy.rule_for_event(event.notification_type)
        now = now or utcnow()
        subject, message, short = self._event_text(event.notification_type, deadline, now)
        return await self._compose(
            deadline_id=deadline.id,
            risk_assessment_id=None,
            rule=rule,
            targets=[RecipientTarget(RecipientType.INDIVIDUAL, deadline.owner_id)],
            subject=subject,
            message=message,
            short_message=short,
        )

    async def compose_custom(
        self,
        target: RecipientTarget,
        rule: NotificationRule,
        subject: str | None,
        message: str,
        deadline_id: str | None = None,
        risk_assessment_id: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> list[AlertNotification]:
        """Compose an operator-requested notification.

        Explicit requests are never deduplicated. Recipient resolution
        errors propagate to the caller.
        """
        recipients = await self.directory.resolve_recipients(target.recipient_type, target.ref)
        notifications = [
            self._build(recipient, target, rule, subject, message, None, deadline_id, risk_assessment_id)
            for recipient in recipients
        ]
        for notification in notifications:
            notification.scheduled_for = scheduled_for
        with self._session_factory() as db:
            db.add_all(notifications)
        logger.info(f"Composed {len(notifications)} {rule.notification_type.value} notification(s) on request")
        return notifications

    async def prepare_escalation(
        self,
        original: AlertNotification,
        target: RecipientTarget,
        level: int,
    ) -> list[AlertNotification]:
        """Build (without saving) the successors of an escalated notification.

        Raises:
            RecipientResolutionFailed: the next tier could not be resolved
        """
        recipients = await self.directory.resolve_recipients(target.recipient_type, target.ref)
        if not recipients:
            raise RecipientResolutionFailed(
                f"No recipients for {target.recipient_type.value} '{target.ref}'",
                recipient_type=target.recipient_type.value,
                ref=target.ref,
            )

        priority = NotificationPriority(original.priority).bump()
        wanted = tuple(dict.fromkeys(
            [Channel(c) for c in original.channels] + list(self.policy.escalation_channels)
        ))
        rule = NotificationRule(NotificationType.ESCALATION, priority, wanted, requires_response=True)
        subject = f"[ESCALATION L{level}] {original.subject or 'Unanswered compliance alert'}"
        message = (
            f"Escalated to you (level {level}) because the original recipient "
            f"{original.recipient_name or original.recipient_ref} did not respond or could not be reached. "
            f"{original.message}"
        )
        short = shorten(f"ESCALATION L{level}: {original.short_message or original.message}")

        successors = []
        for recipient in recipients:
            successor = self._build(
                recipient, target, rule, subject, message, short,
                original.deadline_id, original.risk_assessment_id,
            )
            successor.parent_notification_id = original.id
            successor.escalation_level = level
            successors.append(successor)
        return successors

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def has_unresolved(db: Session, deadline_id: str, notification_type: NotificationType) -> bool:
        """Whether an unresolved notification exists for the pair."""
        candidates = (
            db.query(AlertNotification)
            .filter(
                AlertNotification.deadline_id == deadline_id,
                AlertNotification.notification_type == notification_type.value,
                AlertNotification.status.notin_(
                    [NotificationStatus.ACKNOWLEDGED.value, NotificationStatus.CANCELLED.value]
                ),
            )
            .all()
        )
        return any(not n.is_resolved for n in candidates)

    async def _compose(
        self,
        deadline_id: str,
        risk_assessment_id: str | None,
        rule: NotificationRule,
        targets: list[RecipientTarget],
        subject: str,
        message: str,
        short_message: str | None,
    ) -> list[AlertNotification]:
        with self._session_factory() as db:
            if self.has_unresolved(db, deadline_id, rule.notification_type):
                logger.debug(
                    f"Skipping {rule.notification_type.value} for deadline {deadline_id}: unresolved notification exists"
                )
                return []

        notifications: list[AlertNotification] = []
        seen: set[str] = set()
        for target in targets:
            try:
                recipients = await self.directory.resolve_recipients(target.recipient_type, target.ref)
            except RecipientResolutionFailed as e:
                logger.warning(f"Recipient resolution failed for deadline {deadline_id}: {e.message}")
                continue
            for recipient in recipients:
                if recipient.id in seen:
                    continue
                seen.add(recipient.id)
                notifications.append(
                    self._build(
                        recipient, target, rule, subject, message, short_message,
                        deadline_id, risk_assessment_id,
                    )
                )

        if not notifications:
            return []

        with self._session_factory() as db:
            # Another composition may have landed while recipients resolved
            if self.has_unresolved(db, deadline_id, rule.notification_type):
                return []
            db.add_all(notifications)

        logger.info(
            f"Composed {len(notifications)} {rule.notification_type.value} notification(s) "
            f"for deadline {deadline_id} at {rule.priority.value} priority"
        )
        return notifications

    def _build(
        self,
        recipient: Recipient,
        target: RecipientTarget,
        rule: NotificationRule,
        subject: str | None,
        message: str,
        short_message: str | None,
        deadline_id: str | None,
        risk_assessment_id: str | None,
    ) -> AlertNotification:
        channels = select_channels(rule.channels, recipient)
        return AlertNotification(
            deadline_id=deadline_id,
            risk_assessment_id=risk_assessment_id,
            recipient_type=target.recipient_type.value,
            recipient_ref=target.ref,
            recipient_id=recipient.id,
            recipient_name=recipient.name,
            recipient_contacts=recipient_contacts(recipient, channels),
            notification_type=rule.notification_type.value,
            priority=rule.priority.value,
            channels=channels,
            subject=subject,
            message=message,
            short_message=shorten(short_message or message, SHORT_MESSAGE_LIMIT),
            requires_response=rule.requires_response,
        )

    @staticmethod
    def _describe_days(days: float) -> str:
        if days < 0:
            return f"{abs(days):.1f} days overdue"
        if days < 1:
            return f"{days * 24:.0f} hours left"
        return f"{days:.1f} days left"

    def _event_text(
        self, notification_type: NotificationType, deadline: ComplianceDeadline, now: datetime
    ) -> tuple[str, str, str]:
        due = f"{deadline.due_at:%Y-%m-%d %H:%M} UTC"
        days = self._describe_days(deadline.days_remaining(now))
        if notification_type == NotificationType.OVERDUE_WARNING:
            return (
                f"[OVERDUE] {deadline.title}",
                f"Compliance deadline '{deadline.title}' was due {due} ({days}) and is "
                f"{deadline.completion_percentage}% complete. Immediate action is required.",
                f"OVERDUE: {deadline.title}, {deadline.completion_percentage}% done",
            )
        if notification_type == NotificationType.DEADLINE_REMINDER:
            return (
                f"[REMINDER] {deadline.title} due {deadline.due_at:%Y-%m-%d}",
                f"Reminder: compliance deadline '{deadline.title}' is due {due} ({days}). "
                f"Current completion is {deadline.completion_percentage}%.",
                f"Reminder: {deadline.title} due {deadline.due_at:%Y-%m-%d}",
            )
        if notification_type == NotificationType.COMPLETION_CONFIRMATION:
            return (
                f"[COMPLETED] {deadline.title}",
                f"Compliance deadline '{deadline.title}' has been completed. "
                "Outstanding alerts for it were cancelled.",
                f"Completed: {deadline.title}",
            )
        return (
            f"[UPDATE] {deadline.title}",
            f"Compliance deadline '{deadline.title}' is now {deadline.status} "
            f"({deadline.completion_percentage}% complete, due {due}).",
            f"Update: {deadline.title} {deadline.status}",
        )
