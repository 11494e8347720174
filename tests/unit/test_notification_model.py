"""Tests for the alert notification lifecycle."""

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import InvalidTransitionError
from app.models.notifications import ALLOWED_TRANSITIONS, AlertNotification
from app.schemas.enums import NotificationPriority, NotificationStatus

NOW = datetime(2026, 3, 2, 12, 0, 0)


def make(**overrides) -> AlertNotification:
    values = {
        "recipient_type": "individual",
        "recipient_ref": "owner-1",
        "notification_type": "risk_alert",
        "priority": "high",
        "channels": ["email"],
        "message": "Deadline at risk",
    }
    values.update(overrides)
    return AlertNotification(**values)


class TestDefaults:
    """Tests for construction defaults and invariants."""

    def test_defaults(self):
        notification = make()
        assert notification.status == "pending"
        assert notification.retry_count == 0
        assert notification.escalation_level == 0
        assert notification.requires_response is False

    def test_channels_required(self):
        with pytest.raises(ValueError):
            make(channels=[])

    def test_duplicate_channels_collapse(self):
        assert make(channels=["email", "sms", "email"]).channels == ["email", "sms"]

    def test_escalation_level_never_decreases(self):
        notification = make(escalation_level=2)
        with pytest.raises(ValueError):
            notification.escalation_level = 1

    def test_escalation_level_capped(self):
        with pytest.raises(ValueError):
            make(escalation_level=4)

    def test_priority_bump(self):
        assert NotificationPriority.LOW.bump() == NotificationPriority.MEDIUM
        assert NotificationPriority.HIGH.bump() == NotificationPriority.URGENT
        assert NotificationPriority.CRITICAL.bump() == NotificationPriority.CRITICAL


class TestTransitions:
    """Tests for lifecycle transitions."""

    def test_happy_path(self):
        notification = make(requires_response=True)
        notification.mark_sent("attempt-1", NOW)
        notification.mark_delivered(NOW + timedelta(seconds=5))
        notification.mark_read(NOW + timedelta(minutes=1))
        notification.mark_acknowledged(NOW + timedelta(minutes=2), "Working on it")

        assert notification.status == "acknowledged"
        assert notification.current_attempt_id == "attempt-1"
        assert notification.response_content == "Working on it"
        assert notification.is_terminal

    def test_failure_increments_retry_once(self):
        notification = make()
        notification.mark_sent("a", NOW)
        notification.mark_failed("boom", NOW + timedelta(minutes=1))

        assert notification.retry_count == 1
        assert notification.scheduled_for == NOW + timedelta(minutes=1)
        assert notification.can_retry(3)

    def test_delivery_resets_retry_count(self):
        notification = make()
        notification.mark_sent("a", NOW)
        notification.mark_failed("boom", NOW)
        notification.mark_scheduled(NOW)
        notification.mark_sent("b", NOW)
        notification.mark_delivered(NOW)
        assert notification.retry_count == 0
        assert notification.error_message is None

    @pytest.mark.parametrize("terminal", ["acknowledged", "cancelled"])
    def test_terminal_states_have_no_exits(self, terminal):
        notification = make(status=terminal)
        for target in NotificationStatus:
            with pytest.raises(InvalidTransitionError):
                notification.transition_to(target)

    def test_pending_cannot_be_delivered(self):
        with pytest.raises(InvalidTransitionError):
            make().mark_delivered(NOW)

    def test_acknowledge_requires_delivery(self):
        with pytest.raises(InvalidTransitionError):
            make().mark_acknowledged(NOW)

    def test_every_status_has_rules(self):
        assert set(ALLOWED_TRANSITIONS) == set(NotificationStatus)

    def test_escalated_failure_is_terminal(self):
        notification = make(status="failed", retry_count=3)
        assert notification.retries_exhausted(3)
        notification.record_escalation(NOW)
        assert notification.is_terminal
        assert not notification.retries_exhausted(3)
        assert notification.escalation_level == 1

    def test_resolved_semantics(self):
        assert make(status="delivered").is_resolved
        assert not make(status="delivered", requires_response=True).is_resolved
        assert not make(status="failed", retry_count=1).is_resolved
        assert make(status="cancelled").is_resolved
