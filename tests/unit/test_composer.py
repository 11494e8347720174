"""Tests for the notification composer."""

from datetime import timedelta

import pytest

from app.api.services.composer import (
    DeadlineEvent,
    NotificationComposer,
    RecipientTarget,
    select_channels,
)
from app.core.directory import Recipient
from app.models.notifications import AlertNotification
from app.models.risk import RiskAssessment
from app.schemas.enums import NotificationType, RecipientType


def assessment_for(deadline, level, score, now):
    return RiskAssessment(
        id=f"ra-{level}-{deadline.id}",
        deadline_id=deadline.id,
        risk_score=score,
        risk_level=level,
        factors=[],
        computed_at=now,
    )


@pytest.fixture
def composer(settings, directory, db_context):
    return NotificationComposer(settings, directory, db_context)


class TestSelectChannels:
    """Tests for per-recipient channel selection."""

    def test_keeps_reachable_channels(self):
        recipient = Recipient("u", "U", {"email": "u@example.com", "sms": "+15551234567"})
        assert select_channels(("email", "sms", "push"), recipient) == ["email", "sms"]

    def test_falls_back_to_in_app(self):
        recipient = Recipient("u", "U", {})
        assert select_channels(("email", "sms"), recipient) == ["in_app"]


class TestComposeForAssessment:
    """Tests for risk-driven composition."""

    @pytest.mark.asyncio
    async def test_critical_risk_uses_email_sms_push(self, composer, add_deadline, now):
        deadline = add_deadline(due_at=now + timedelta(days=2), completion_percentage=10, priority="critical")

        notifications = await composer.compose_for_assessment(
            assessment_for(deadline, "critical", 82.9, now), deadline, now
        )

        assert len(notifications) == 1
        notification = notifications[0]
        assert set(notification.channels) == {"email", "sms", "push"}
        assert notification.priority == "critical"
        assert notification.requires_response is True
        assert notification.status == "pending"
        assert notification.recipient_id == "owner-1"
        assert len(notification.short_message) <= 160

    @pytest.mark.asyncio
    async def test_medium_risk_is_email_and_in_app(self, composer, add_deadline, now):
        deadline = add_deadline()
        notifications = await composer.compose_for_assessment(
            assessment_for(deadline, "medium", 45, now), deadline, now
        )
        assert notifications[0].channels == ["email", "in_app"]
        assert notifications[0].recipient_contacts["in_app"] == "owner-1"
        assert notifications[0].requires_response is False

    @pytest.mark.asyncio
    async def test_unresolved_notification_suppresses_duplicate(self, composer, add_deadline, now):
        deadline = add_deadline(due_at=now + timedelta(days=2), priority="critical")
        assessment = assessment_for(deadline, "critical", 90, now)

        first = await composer.compose_for_assessment(assessment, deadline, now)
        second = await composer.compose_for_assessment(assessment, deadline, now)

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_resolved_notification_allows_new_one(self, composer, add_deadline, db_context, now):
        deadline = add_deadline(due_at=now + timedelta(days=2), priority="critical")
        assessment = assessment_for(deadline, "critical", 90, now)
        first = await composer.compose_for_assessment(assessment, deadline, now)
        with db_context() as db:
            db.get(AlertNotification, first[0].id).mark_cancelled("test")

        again = await composer.compose_for_assessment(assessment, deadline, now)
        assert len(again) == 1

    @pytest.mark.asyncio
    async def test_extra_roles_for_critical_risk(self, settings, directory, db_context, add_deadline, now):
        settings.critical_risk_extra_roles = ["auditor"]
        composer = NotificationComposer(settings, directory, db_context)
        deadline = add_deadline(due_at=now + timedelta(days=1), priority="critical")

        notifications = await composer.compose_for_assessment(
            assessment_for(deadline, "critical", 95, now), deadline, now
        )

        assert {n.recipient_id for n in notifications} == {"owner-1", "exec-1"}
        assert {n.recipient_type for n in notifications} == {"individual", "role"}

    @pytest.mark.asyncio
    async def test_unknown_owner_composes_nothing(self, composer, add_deadline, now):
        deadline = add_deadline(owner_id="ghost")
        notifications = await composer.compose_for_assessment(
            assessment_for(deadline, "high", 65, now), deadline, now
        )
        assert notifications == []

    @pytest.mark.asyncio
    async def test_channels_limited_to_reachable_ones(self, composer, add_deadline, now):
        deadline = add_deadline(owner_id="owner-2")
        notifications = await composer.compose_for_assessment(
            assessment_for(deadline, "critical", 85, now), deadline, now
        )
        assert notifications[0].channels == ["email"]


class TestComposeForEvent:
    """Tests for deadline event composition."""

    @pytest.mark.asyncio
    async def test_overdue_warning(self, composer, add_deadline, now):
        deadline = add_deadline(due_at=now - timedelta(days=1))
        notifications = await composer.compose_for_event(
            DeadlineEvent(deadline, NotificationType.OVERDUE_WARNING), now
        )
        assert notifications[0].notification_type == "overdue_warning"
        assert notifications[0].priority == "urgent"
        assert "OVERDUE" in notifications[0].subject

    @pytest.mark.asyncio
    async def test_reminder(self, composer, add_deadline, now):
        deadline = add_deadline(due_at=now + timedelta(days=5))
        notifications = await composer.compose_for_event(
            DeadlineEvent(deadline, NotificationType.DEADLINE_REMINDER), now
        )
        assert notifications[0].notification_type == "deadline_reminder"
        assert "5.0 days left" in notifications[0].message


class TestPrepareEscalation:
    """Tests for escalation successors."""

    @pytest.mark.asyncio
    async def test_successor_bumps_priority_and_links_parent(self, composer, now):
        original = AlertNotification(
            id="n-1",
            deadline_id="d-1",
            recipient_type="individual",
            recipient_ref="owner-1",
            notification_type="risk_alert",
            priority="high",
            channels=["email", "push"],
            subject="[HIGH RISK] Filing",
            message="Filing is at high risk.",
        )

        successors = await composer.prepare_escalation(
            original, RecipientTarget(RecipientType.ROLE, "compliance_officer"), level=1
        )

        assert len(successors) == 1
        successor = successors[0]
        assert successor.parent_notification_id == "n-1"
        assert successor.priority == "urgent"
        assert successor.escalation_level == 1
        assert successor.notification_type == "escalation"
        assert successor.recipient_id == "officer-1"
        assert successor.requires_response is True
        assert set(successor.channels) == {"email", "sms"}
