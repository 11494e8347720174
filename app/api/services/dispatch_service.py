"""Delivery dispatcher.

Sends a notification over each of its channels concurrently and
records the outcome. The notification lock is held only while its
status changes; provider calls run outside it. A dispatch whose
notification changed underneath it (cancelled, or re-dispatched) has
its outcome discarded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from app.core.channels import ChannelRegistry, SendResult, safe_log
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.exceptions import ChannelDeliveryFailed, NotFoundError
from app.core.locks import EntityLocks
from app.core.retry import RetryPolicy, classify_failure
from app.models.notifications import AlertNotification, DeliveryAttempt
from app.schemas.enums import DISPATCHABLE_STATUSES, FailureReason, NotificationStatus

logger = logging.getLogger(__name__)


@dataclass
class ChannelOutcome:
    channel: str
    result: SendResult

    @property
    def error(self) -> ChannelDeliveryFailed | None:
        """The channel failure as an engine error, None when the send succeeded."""
        if self.result.success:
            return None
        reason = self.result.failure_reason.value if self.result.failure_reason else "unknown"
        return ChannelDeliveryFailed(f"{self.channel}: {reason}", channel=self.channel, failure_reason=reason)


@dataclass
class DispatchOutcome:
    """Result of one dispatch call."""

    notification_id: str
    status: str
    attempt_id: str | None = None
    channels: list[ChannelOutcome] = field(default_factory=list)
    skipped: bool = False
    discarded: bool = False

    @property
    def delivered(self) -> bool:
        return any(c.result.success for c in self.channels) and not self.discarded

    @property
    def errors(self) -> list[ChannelDeliveryFailed]:
        return [c.error for c in self.channels if not c.result.success]


@dataclass(frozen=True)
class _Envelope:
    """What a dispatch needs to know, copied out under the lock."""

    notification_id: str
    attempt_id: str
    channels: list[str]
    contacts: dict[str, str]
    subject: str | None
    message: str
    short_message: str | None


class DeliveryDispatcher:
    """Channel fan-out with retry scheduling."""

    def __init__(
        self,
        settings: Settings,
        registry: ChannelRegistry,
        session_factory=get_db_context,
        locks: EntityLocks | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.locks = locks or EntityLocks()
        self.breakers = breakers or CircuitBreakerRegistry.from_settings(settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._session_factory = session_factory
        self._global_limit = asyncio.Semaphore(settings.max_concurrent_dispatches)
        self._channel_limits: dict[str, asyncio.Semaphore] = {}

    def _channel_semaphore(self, channel: str) -> asyncio.Semaphore:
        if channel not in self._channel_limits:
            self._channel_limits[channel] = asyncio.Semaphore(self.settings.get_channel_limit(channel))
        return self._channel_limits[channel]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, notification_id: str, now: datetime | None = None) -> DispatchOutcome:
        """Send one notification over all of its channels.

        A ``failed`` notification whose retry is due is rescheduled first.
        Anything else not in ``pending``/``scheduled`` is skipped.
        """
        now = now or utcnow()

        async with self.locks.notification(notification_id):
            with self._session_factory() as db:
                notification = db.get(AlertNotification, notification_id)
                if notification is None:
                    raise NotFoundError(f"Notification {notification_id} not found", notification_id=notification_id)

                if notification.can_retry(self.retry_policy.max_retries):
                    notification.mark_scheduled(now)

                if notification.status_enum not in DISPATCHABLE_STATUSES:
                    return DispatchOutcome(notification_id, notification.status, skipped=True)

                attempt_id = str(uuid4())
                notification.mark_sent(attempt_id, now)
                envelope = _Envelope(
                    notification_id=notification.id,
                    attempt_id=attempt_id,
                    channels=list(notification.channels),
                    contacts=dict(notification.recipient_contacts or {}),
                    subject=notification.subject,
                    message=notification.message,
                    short_message=notification.short_message,
                )

        outcomes = await asyncio.gather(
            *[self._send_channel(envelope, channel) for channel in envelope.channels]
        )

        return await self._record(envelope, list(outcomes), now)

    async def dispatch_many(self, notification_ids: list[str], now: datetime | None = None) -> list[DispatchOutcome]:
        """Dispatch several notifications concurrently; one failure does not stop the rest."""
        results = await asyncio.gather(
            *[self.dispatch(notification_id, now) for notification_id in notification_ids],
            return_exceptions=True,
        )
        outcomes = []
        for notification_id, result in zip(notification_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Dispatch of notification {notification_id} failed: {result}", exc_info=result)
                continue
            outcomes.append(result)
        return outcomes

    async def _send_channel(self, envelope: _Envelope, channel: str) -> ChannelOutcome:
        breaker = self.breakers.get(channel)
        if not breaker.can_execute():
            return ChannelOutcome(
                channel, SendResult.failed(f"{channel} circuit open", FailureReason.CIRCUIT_OPEN)
            )

        contact = envelope.contacts.get(channel)
        if not contact:
            return ChannelOutcome(
                channel, SendResult.failed(f"No {channel} address for recipient", FailureReason.INVALID_RECIPIENT)
            )

        provider = self.registry.get(channel)
        body = provider.render_body(envelope.message, envelope.short_message)
        dedup_key = f"{envelope.attempt_id}:{channel}"

        try:
            async with self._global_limit, self._channel_semaphore(channel):
                result = await asyncio.wait_for(
                    provider.send(contact, envelope.subject, body, dedup_key),
                    timeout=self.settings.provider_timeout_seconds,
                )
        except asyncio.TimeoutError:
            result = SendResult.failed(
                f"{channel} provider timed out after {self.settings.provider_timeout_seconds}s",
                FailureReason.TIMEOUT,
            )
        except Exception as e:
            result = SendResult.failed(f"{channel} provider error: {type(e).__name__}", classify_failure(e))
            safe_log("warning", f"{channel} send for notification {envelope.notification_id} raised: {e}")

        if result.success:
            breaker.record_success()
        elif result.failure_reason != FailureReason.NOT_CONFIGURED:
            breaker.record_failure()
        return ChannelOutcome(channel, result)

    async def _record(
        self, envelope: _Envelope, outcomes: list[ChannelOutcome], now: datetime
    ) -> DispatchOutcome:
        completed_at = utcnow()

        async with self.locks.notification(envelope.notification_id):
            with self._session_factory() as db:
                for outcome in outcomes:
                    db.add(DeliveryAttempt(
                        notification_id=envelope.notification_id,
                        attempt_id=envelope.attempt_id,
                        channel=outcome.channel,
                        success=outcome.result.success,
                        provider_message_id=outcome.result.provider_message_id,
                        error=outcome.result.error,
                        failure_reason=(
                            outcome.result.failure_reason.value if outcome.result.failure_reason else None
                        ),
                        started_at=now,
                        completed_at=completed_at,
                    ))

                notification = db.get(AlertNotification, envelope.notification_id)
                if (
                    notification.status != NotificationStatus.SENT.value
                    or notification.current_attempt_id != envelope.attempt_id
                ):
                    logger.info(
                        f"Discarding outcome of attempt {envelope.attempt_id} for notification "
                        f"{envelope.notification_id}: now {notification.status}"
                    )
                    return DispatchOutcome(
                        envelope.notification_id, notification.status, envelope.attempt_id,
                        outcomes, discarded=True,
                    )

                if any(o.result.success for o in outcomes):
                    notification.mark_delivered(now)
                    delivered_on = [o.channel for o in outcomes if o.result.success]
                    logger.info(f"Notification {notification.id} delivered via {', '.join(delivered_on)}")
                else:
                    self._fail(notification, outcomes, now)

                return DispatchOutcome(
                    envelope.notification_id, notification.status, envelope.attempt_id, outcomes
                )

    def _fail(self, notification: AlertNotification, outcomes: list[ChannelOutcome], now: datetime) -> None:
        errors = "; ".join(o.error.message for o in outcomes if not o.result.success)
        max_retries = self.retry_policy.max_retries
        if notification.retry_count + 1 < max_retries:
            next_retry_at = self.retry_policy.next_attempt_at(now, notification.retry_count)
        else:
            next_retry_at = None
        notification.mark_failed(f"All channels failed ({errors})", next_retry_at)

        if next_retry_at is not None:
            logger.warning(
                f"Notification {notification.id} failed on all channels "
                f"(attempt {notification.retry_count}/{max_retries}); retry at {next_retry_at.isoformat()}"
            )
        else:
            logger.warning(
                f"Notification {notification.id} exhausted {max_retries} delivery attempts; "
                "handing off to escalation"
            )

    # ------------------------------------------------------------------
    # Provider confirmations
    # ------------------------------------------------------------------

    async def confirm_delivery(
        self,
        attempt_id: str,
        channel: str,
        provider_message_id: str | None,
        success: bool,
        now: datetime | None = None,
    ) -> bool:
        """Apply an asynchronous provider receipt to its channel attempt.

        Receipts for a superseded attempt, or for a notification that is
        already terminal, are ignored.

        Returns:
            True if the receipt was applied
        """
        now = now or utcnow()
        with self._session_factory() as db:
            attempt = (
                db.query(DeliveryAttempt)
                .filter(DeliveryAttempt.attempt_id == attempt_id, DeliveryAttempt.channel == channel)
                .first()
            )
            if attempt is None:
                raise NotFoundError(
                    f"No {channel} delivery attempt {attempt_id}", attempt_id=attempt_id, channel=channel
                )
            notification_id = attempt.notification_id

        async with self.locks.notification(notification_id):
            with self._session_factory() as db:
                notification = db.get(AlertNotification, notification_id)
                if notification.is_terminal or notification.current_attempt_id != attempt_id:
                    logger.info(
                        f"Ignoring late {channel} receipt for attempt {attempt_id} "
                        f"(notification {notification_id} is {notification.status})"
                    )
                    return False

                attempt = (
                    db.query(DeliveryAttempt)
                    .filter(DeliveryAttempt.attempt_id == attempt_id, DeliveryAttempt.channel == channel)
                    .first()
                )
                attempt.confirmed_at = now
                attempt.success = success
                if provider_message_id:
                    attempt.provider_message_id = provider_message_id
                if not success and attempt.failure_reason is None:
                    attempt.failure_reason = FailureReason.UNKNOWN.value
                    attempt.error = "Provider reported delivery failure"

        logger.info(f"Applied {channel} receipt for attempt {attempt_id} (success={success})")
        return True
