"""Periodic tick driving the engine.

Each tick, in order:

1. cancels open notifications of completed deadlines
2. re-scores deadlines whose assessment is stale and composes alerts for
   risk increases, overdue deadlines and deadlines entering the
   reminder window
3. dispatches pending notifications and due retries
4. runs the escalation sweep

Ticks never overlap: a tick that starts while another is running
returns immediately with ``skipped=True``.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta

from app.api.services.composer import DeadlineEvent, NotificationComposer
from app.api.services.deadline_store import DeadlineFilter, DeadlineStore
from app.api.services.escalation_service import EscalationManager
from app.api.services.notification_service import NotificationService
from app.api.services.risk_service import RiskService
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.exceptions import DataUnavailable
from app.core.observability import EventType, ObservabilityEvent, ObservabilitySink, Severity
from app.models.deadline import ComplianceDeadline
from app.models.risk import RiskAssessment
from app.schemas.dashboard import TickResponse
from app.schemas.enums import DeadlineStatus, NotificationType, RiskLevel

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs one engine pass per tick."""

    def __init__(
        self,
        settings: Settings,
        store: DeadlineStore,
        risk: RiskService,
        composer: NotificationComposer,
        notifications: NotificationService,
        escalation: EscalationManager,
        sink: ObservabilitySink,
    ) -> None:
        self.settings = settings
        self.store = store
        self.risk = risk
        self.composer = composer
        self.notifications = notifications
        self.escalation = escalation
        self.sink = sink
        self._tick_lock = asyncio.Lock()
        # deadline id -> consecutive failed reads
        self._unavailable: dict[str, int] = {}
        self.last_tick: TickResponse | None = None

    @property
    def running(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self, now: datetime | None = None) -> TickResponse:
        if self._tick_lock.locked():
            logger.warning("Previous tick still running; skipping this one")
            return TickResponse(skipped=True)

        async with self._tick_lock:
            now = now or utcnow()
            result = TickResponse(started_at=now)
            started = time.monotonic()
            logger.info(f"Engine tick started at {now.isoformat()}")

            await self._cancel_completed(now, result)
            await self._assess_deadlines(now, result)
            await self._dispatch(now, result)
            await self._escalate(now, result)

            # finished_at stays on the clock started_at came from
            result.duration_seconds = round(time.monotonic() - started, 3)
            result.finished_at = now + timedelta(seconds=result.duration_seconds)
            self.last_tick = result
            logger.info(
                f"Engine tick finished in {result.duration_seconds}s: "
                f"rescored={result.rescored} composed={result.composed} "
                f"cancelled={result.cancelled} dispatched={result.dispatched} "
                f"delivered={result.delivered} escalated={result.escalated} errors={len(result.errors)}"
            )
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _cancel_completed(self, now: datetime, result: TickResponse) -> None:
        try:
            cancellation = await self.notifications.cancel_for_completed_deadlines(now)
        except Exception as e:
            logger.error(f"Cancellation step failed: {e}", exc_info=True)
            result.errors.append(f"cancel: {e}")
            return
        result.cancelled = len(cancellation.cancelled_ids)
        result.composed += len(cancellation.confirmations)

    async def _assess_deadlines(self, now: datetime, result: TickResponse) -> None:
        try:
            deadlines = self.store.list_deadlines(DeadlineFilter(exclude_completed=True))
        except DataUnavailable as e:
            logger.error(f"Deadline listing unavailable, skipping risk pass: {e.message}")
            result.errors.append(f"list: {e.message}")
            return

        outcomes = await asyncio.gather(
            *[self._assess_one(deadline, now, result) for deadline in deadlines],
            return_exceptions=True,
        )
        for deadline, outcome in zip(deadlines, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Risk pass for deadline {deadline.id} failed: {outcome}", exc_info=outcome)
                result.errors.append(f"{deadline.id}: {outcome}")

    async def _assess_one(self, deadline: ComplianceDeadline, now: datetime, result: TickResponse) -> None:
        last = self.risk.get_current_assessment(deadline.id)
        if not self.risk.needs_rescore(deadline, last, now):
            return

        try:
            _, _, composed = await self.assess_deadline(deadline.id, now)
        except DataUnavailable as e:
            await self._record_unavailable(deadline.id, e, result)
            return
        self._unavailable.pop(deadline.id, None)
        result.rescored += 1
        result.composed += composed

    async def assess_deadline(
        self, deadline_id: str, now: datetime | None = None
    ) -> tuple[RiskAssessment, RiskAssessment | None, int]:
        """Score a deadline and compose whatever alerts the change warrants.

        Returns:
            (new assessment, superseded assessment or None, notifications composed)

        Raises:
            DataUnavailable: the deadline could not be read
        """
        now = now or utcnow()
        assessment, previous = await self.risk.run_assessment(deadline_id, now)
        deadline = self.store.get_deadline(deadline_id)
        composed = 0

        previous_rank = RiskLevel(previous.risk_level).rank if previous else RiskLevel.LOW.rank
        if RiskLevel(assessment.risk_level).rank > previous_rank:
            composed += len(await self.composer.compose_for_assessment(assessment, deadline, now))

        for event_type in self._deadline_events(deadline, previous, now):
            composed += len(await self.composer.compose_for_event(DeadlineEvent(deadline, event_type), now))
        return assessment, previous, composed

    def _deadline_events(
        self, deadline: ComplianceDeadline, last: RiskAssessment | None, now: datetime
    ) -> list[NotificationType]:
        """Deadline events that occurred since the last assessment."""
        if deadline.is_completed:
            return []
        if deadline.effective_status(now) == DeadlineStatus.OVERDUE:
            if last is None or last.computed_at <= deadline.due_at:
                return [NotificationType.OVERDUE_WARNING]
            return []

        window = self.settings.reminder_window_days
        inside_now = deadline.days_remaining(now) <= window
        inside_before = last is not None and deadline.days_remaining(last.computed_at) <= window
        if inside_now and not inside_before:
            return [NotificationType.DEADLINE_REMINDER]
        return []

    async def _record_unavailable(self, deadline_id: str, error: DataUnavailable, result: TickResponse) -> None:
        count = self._unavailable.get(deadline_id, 0) + 1
        self._unavailable[deadline_id] = count
        result.data_unavailable.append(deadline_id)
        logger.warning(f"Deadline {deadline_id} unreadable ({count} consecutive): {error.message}")

        if count == self.settings.data_unavailable_alert_threshold:
            await self.sink.emit(ObservabilityEvent(
                event_type=EventType.DATA_UNAVAILABLE,
                title="Compliance deadline unreadable",
                message=f"Deadline {deadline_id} could not be read for {count} consecutive ticks.",
                severity=Severity.ERROR,
                deadline_id=deadline_id,
                metadata={"consecutive_failures": count},
            ))

    async def _dispatch(self, now: datetime, result: TickResponse) -> None:
        try:
            outcomes = await self.notifications.dispatch_due(now)
        except Exception as e:
            logger.error(f"Dispatch step failed: {e}", exc_info=True)
            result.errors.append(f"dispatch: {e}")
            return
        dispatched = [o for o in outcomes if not o.skipped]
        result.dispatched = len(dispatched)
        result.delivered = sum(1 for o in dispatched if o.delivered)

    async def _escalate(self, now: datetime, result: TickResponse) -> None:
        try:
            escalations = await self.escalation.sweep(now)
        except Exception as e:
            logger.error(f"Escalation step failed: {e}", exc_info=True)
            result.errors.append(f"escalate: {e}")
            return
        result.escalated = len(escalations)
