"""Tests for the delivery dispatcher."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from app.api.services.dispatch_service import DeliveryDispatcher
from app.core.channels import ChannelRegistry
from app.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from app.core.exceptions import ErrorCode
from app.models.notifications import AlertNotification, DeliveryAttempt
from app.schemas.enums import Channel, FailureReason
from tests.conftest import FakeProvider, failing


@pytest.fixture
def dispatcher(settings, registry, db_context):
    return DeliveryDispatcher(settings, registry, db_context)


@pytest.fixture
def add_notification(db_context):
    def _add(**overrides) -> AlertNotification:
        values = {
            "recipient_type": "individual",
            "recipient_ref": "owner-1",
            "recipient_id": "owner-1",
            "recipient_contacts": {"email": "owner@example.com", "sms": "+15550000001"},
            "notification_type": "risk_alert",
            "priority": "high",
            "channels": ["email", "sms"],
            "subject": "Risk",
            "message": "Deadline at risk",
        }
        values.update(overrides)
        notification = AlertNotification(**values)
        with db_context() as db:
            db.add(notification)
        return notification

    return _add


def load(db_context, notification_id) -> AlertNotification:
    with db_context() as db:
        return db.get(AlertNotification, notification_id)


def attempts(db_context, notification_id) -> list[DeliveryAttempt]:
    with db_context() as db:
        return db.query(DeliveryAttempt).filter(DeliveryAttempt.notification_id == notification_id).all()


class TestDispatch:
    """Tests for DeliveryDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_all_channels_succeed(self, dispatcher, add_notification, providers, db_context, now):
        notification = add_notification()

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.status == "delivered"
        stored = load(db_context, notification.id)
        assert stored.delivered_at == now
        assert stored.sent_at == now
        assert stored.retry_count == 0
        assert len(providers[Channel.EMAIL].calls) == 1
        assert len(providers[Channel.SMS].calls) == 1
        assert {a.channel for a in attempts(db_context, notification.id)} == {"email", "sms"}

    @pytest.mark.asyncio
    async def test_dedup_key_is_per_attempt_and_channel(self, dispatcher, add_notification, providers, now):
        notification = add_notification()
        outcome = await dispatcher.dispatch(notification.id, now)
        assert providers[Channel.EMAIL].calls[0]["dedup_key"] == f"{outcome.attempt_id}:email"

    @pytest.mark.asyncio
    async def test_one_channel_success_is_enough(self, dispatcher, add_notification, providers, db_context, now):
        providers[Channel.SMS].default = failing()
        notification = add_notification()

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.status == "delivered"
        failed = [a for a in attempts(db_context, notification.id) if not a.success]
        assert [a.channel for a in failed] == ["sms"]
        assert failed[0].failure_reason == "service_unavailable"

    @pytest.mark.asyncio
    async def test_all_fail_schedules_retry_with_backoff(self, dispatcher, add_notification, providers, db_context, now):
        providers[Channel.EMAIL].default = failing()
        providers[Channel.SMS].default = failing(FailureReason.RATE_LIMIT_EXCEEDED)
        notification = add_notification()

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.status == "failed"
        stored = load(db_context, notification.id)
        assert stored.retry_count == 1
        assert stored.scheduled_for == now + timedelta(seconds=60)
        assert "rate_limit_exceeded" in stored.error_message

        assert [(e.channel, e.failure_reason) for e in outcome.errors] == [
            ("email", "service_unavailable"),
            ("sms", "rate_limit_exceeded"),
        ]
        assert all(e.code == ErrorCode.CHANNEL_DELIVERY_FAILED for e in outcome.errors)
        assert stored.error_message == "All channels failed (email: service_unavailable; sms: rate_limit_exceeded)"

    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, dispatcher, add_notification, providers, db_context, now):
        providers[Channel.EMAIL].default = failing()
        providers[Channel.SMS].default = failing()
        notification = add_notification()

        await dispatcher.dispatch(notification.id, now)
        second = now + timedelta(seconds=60)
        await dispatcher.dispatch(notification.id, second)
        stored = load(db_context, notification.id)
        assert stored.retry_count == 2
        assert stored.scheduled_for == second + timedelta(seconds=120)

        await dispatcher.dispatch(notification.id, second + timedelta(seconds=120))
        stored = load(db_context, notification.id)
        assert stored.retry_count == 3
        assert stored.scheduled_for is None
        assert stored.retries_exhausted(3)

        # No budget left: further dispatches are skipped
        outcome = await dispatcher.dispatch(notification.id, now + timedelta(hours=1))
        assert outcome.skipped

    @pytest.mark.asyncio
    async def test_success_after_failure_resets_retry_count(self, dispatcher, add_notification, providers, db_context, now):
        providers[Channel.EMAIL].outcomes = [failing()]
        providers[Channel.SMS].outcomes = [failing()]
        notification = add_notification()

        await dispatcher.dispatch(notification.id, now)
        assert load(db_context, notification.id).retry_count == 1
        await dispatcher.dispatch(notification.id, now + timedelta(minutes=1))

        stored = load(db_context, notification.id)
        assert stored.status == "delivered"
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, dispatcher, add_notification, providers, db_context, now):
        providers[Channel.EMAIL].outcomes = [5.0]
        notification = add_notification(channels=["email"])

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.status == "failed"
        assert outcome.channels[0].result.failure_reason == FailureReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_provider_exception_is_classified(self, dispatcher, add_notification, providers, now):
        request = httpx.Request("POST", "https://gateway.test/email")
        providers[Channel.EMAIL].outcomes = [
            httpx.HTTPStatusError("bad", request=request, response=httpx.Response(503, request=request))
        ]
        notification = add_notification(channels=["email"])

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.channels[0].result.failure_reason == FailureReason.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_missing_contact_fails_channel(self, dispatcher, add_notification, providers, now):
        notification = add_notification(channels=["email", "push"])
        outcome = await dispatcher.dispatch(notification.id, now)

        by_channel = {c.channel: c.result for c in outcome.channels}
        assert by_channel["push"].failure_reason == FailureReason.INVALID_RECIPIENT
        assert providers[Channel.PUSH].calls == []
        assert outcome.status == "delivered"

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, settings, providers, add_notification, db_context, now):
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1, recovery_timeout=600))
        dispatcher = DeliveryDispatcher(settings, ChannelRegistry(providers), db_context, breakers=breakers)
        providers[Channel.EMAIL].default = failing()

        await dispatcher.dispatch(add_notification(channels=["email"]).id, now)
        outcome = await dispatcher.dispatch(add_notification(channels=["email"]).id, now)

        assert outcome.channels[0].result.failure_reason == FailureReason.CIRCUIT_OPEN
        assert len(providers[Channel.EMAIL].calls) == 1

    @pytest.mark.asyncio
    async def test_non_dispatchable_status_is_skipped(self, dispatcher, add_notification, providers, now):
        notification = add_notification(status="cancelled")
        outcome = await dispatcher.dispatch(notification.id, now)
        assert outcome.skipped
        assert providers[Channel.EMAIL].calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_send_discards_outcome(self, dispatcher, add_notification, providers, db_context, now):
        notification = add_notification(channels=["email"])

        async def cancel_mid_flight():
            async with dispatcher.locks.notification(notification.id):
                with db_context() as db:
                    db.get(AlertNotification, notification.id).mark_cancelled("Deadline completed")

        providers[Channel.EMAIL].before_send = cancel_mid_flight

        outcome = await dispatcher.dispatch(notification.id, now)

        assert outcome.discarded
        assert load(db_context, notification.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_concurrent_dispatch_sends_once(self, dispatcher, add_notification, providers, now):
        notification = add_notification(channels=["email"])

        outcomes = await asyncio.gather(
            dispatcher.dispatch(notification.id, now),
            dispatcher.dispatch(notification.id, now),
        )

        assert sorted(o.skipped for o in outcomes) == [False, True]
        assert len(providers[Channel.EMAIL].calls) == 1


class TestConfirmDelivery:
    """Tests for asynchronous provider receipts."""

    @pytest.mark.asyncio
    async def test_receipt_for_current_attempt_is_applied(self, dispatcher, add_notification, db_context, now):
        notification = add_notification(channels=["email"])
        outcome = await dispatcher.dispatch(notification.id, now)

        applied = await dispatcher.confirm_delivery(outcome.attempt_id, "email", "prov-42", True, now)

        assert applied
        [attempt] = attempts(db_context, notification.id)
        assert attempt.confirmed_at == now
        assert attempt.provider_message_id == "prov-42"

    @pytest.mark.asyncio
    async def test_late_receipt_after_cancel_is_ignored(self, dispatcher, add_notification, db_context, now):
        notification = add_notification(channels=["email"])
        outcome = await dispatcher.dispatch(notification.id, now)
        with db_context() as db:
            db.get(AlertNotification, notification.id).mark_cancelled("done")

        applied = await dispatcher.confirm_delivery(outcome.attempt_id, "email", "prov-42", False, now)

        assert not applied
        [attempt] = attempts(db_context, notification.id)
        assert attempt.confirmed_at is None
        assert attempt.success is True

    @pytest.mark.asyncio
    async def test_receipt_for_superseded_attempt_is_ignored(self, dispatcher, add_notification, providers, now):
        providers[Channel.EMAIL].outcomes = [failing()]
        notification = add_notification(channels=["email"])
        first = await dispatcher.dispatch(notification.id, now)
        await dispatcher.dispatch(notification.id, now + timedelta(minutes=1))

        assert not await dispatcher.confirm_delivery(first.attempt_id, "email", None, True, now)
