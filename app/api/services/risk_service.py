"""Risk scoring service.

``RiskScorer`` is a pure function of a deadline, its assessment history
and the clock. ``RiskService`` persists the result as a new assessment
and links the previous one forward.
"""

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.api.services.deadline_store import DeadlineStore
from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.exceptions import NotFoundError
from app.core.locks import EntityLocks
from app.models.deadline import ComplianceDeadline
from app.models.risk import RiskAssessment
from app.schemas.enums import DeadlinePriority, DeadlineStatus, RiskLevel

logger = logging.getLogger(__name__)

PRIORITY_WEIGHTS = {
    DeadlinePriority.CRITICAL: 1.0,
    DeadlinePriority.HIGH: 0.75,
    DeadlinePriority.MEDIUM: 0.5,
    DeadlinePriority.LOW: 0.25,
}

# Lower bound (inclusive) of each level, highest first
RISK_LEVEL_THRESHOLDS = (
    (80.0, RiskLevel.CRITICAL),
    (60.0, RiskLevel.HIGH),
    (40.0, RiskLevel.MEDIUM),
)


def risk_level_for_score(score: float) -> RiskLevel:
    """Map a 0-100 score to its risk level."""
    for threshold, level in RISK_LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.LOW


def _factor(name: str, impact: float, probability: float) -> dict[str, Any]:
    return {"name": name, "impact": round(impact, 1), "probability": round(probability, 1)}


@dataclass
class ScoreResult:
    """Unpersisted output of one scoring run."""

    risk_score: float
    risk_level: RiskLevel
    factors: list[dict[str, Any]]

    def to_assessment(self, deadline_id: str, computed_at: datetime) -> RiskAssessment:
        return RiskAssessment(
            deadline_id=deadline_id,
            risk_score=self.risk_score,
            risk_level=self.risk_level.value,
            factors=self.factors,
            computed_at=computed_at,
        )


class RiskScorer:
    """Computes a deadline's risk score.

    The base score is a weighted sum of three terms in [0, 1]:

    - time pressure: ``1 / (1 + days_remaining / half_life)``
    - completion gap: remaining work scaled by time pressure, so unfinished
      work far from the due date weighs little
    - priority: a fixed weight per deadline priority

    A rising score across the recent history adds a capped trend bonus.
    Overdue and incomplete deadlines are always 100; completed ones are 0.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def score(
        self,
        deadline: ComplianceDeadline,
        history: list[RiskAssessment] | None = None,
        now: datetime | None = None,
    ) -> ScoreResult:
        """Score a deadline.

        Args:
            deadline: Deadline snapshot
            history: Earlier assessments, oldest first
            now: Evaluation time (defaults to the current UTC time)
        """
        now = now or utcnow()
        history = history or []
        status = deadline.effective_status(now)

        if status == DeadlineStatus.COMPLETED:
            return ScoreResult(0.0, RiskLevel.LOW, [_factor("completed", 0, 0)])

        completion = max(0, min(100, deadline.completion_percentage or 0))
        if status == DeadlineStatus.OVERDUE:
            return ScoreResult(100.0, RiskLevel.CRITICAL, [_factor("overdue", 100, 100)])

        s = self.settings
        days = max(0.0, deadline.days_remaining(now))
        pressure = 1.0 / (1.0 + days / s.risk_pressure_half_life_days)
        gap = (100 - completion) / 100.0
        try:
            priority_weight = PRIORITY_WEIGHTS[DeadlinePriority(deadline.priority)]
        except ValueError:
            logger.warning(f"Deadline {deadline.id} has unknown priority '{deadline.priority}'")
            priority_weight = PRIORITY_WEIGHTS[DeadlinePriority.MEDIUM]

        base = 100.0 * (
            s.risk_weight_time_pressure * pressure
            + s.risk_weight_completion_gap * gap * pressure
            + s.risk_weight_priority * priority_weight
        )
        factors = [
            _factor("time_pressure", s.risk_weight_time_pressure * 100, pressure * 100),
            _factor("completion_gap", s.risk_weight_completion_gap * 100, gap * pressure * 100),
            _factor("priority", s.risk_weight_priority * 100, priority_weight * 100),
        ]

        bonus = self._trend_bonus(history, base)
        if bonus > 0:
            factors.append(_factor("trend", bonus, 100))

        score = round(max(0.0, min(100.0, base + bonus)), 2)
        return ScoreResult(score, risk_level_for_score(score), factors)

    def _trend_bonus(self, history: list[RiskAssessment], base: float) -> float:
        window = self.settings.risk_trend_window
        if window < 2 or not history:
            return 0.0
        scores = [a.risk_score for a in history[-(window - 1):]] + [base]
        if len(scores) < 2:
            return 0.0
        rising = all(later >= earlier for earlier, later in zip(scores, scores[1:]))
        if not rising or scores[-1] <= scores[0]:
            return 0.0
        return min(self.settings.risk_trend_cap, (scores[-1] - scores[0]) * self.settings.risk_trend_factor)


class RiskService:
    """Persists assessments and answers history queries."""

    def __init__(
        self,
        settings: Settings,
        store: DeadlineStore,
        session_factory=get_db_context,
        locks: EntityLocks | None = None,
        scorer: RiskScorer | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.locks = locks or EntityLocks()
        self.scorer = scorer or RiskScorer(settings)
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _current(db: Session, deadline_id: str) -> RiskAssessment | None:
        return (
            db.query(RiskAssessment)
            .filter(RiskAssessment.deadline_id == deadline_id, RiskAssessment.superseded_by.is_(None))
            .order_by(RiskAssessment.computed_at.desc())
            .first()
        )

    def get_current_assessment(self, deadline_id: str) -> RiskAssessment | None:
        with self._session_factory() as db:
            return self._current(db, deadline_id)

    def get_assessment(self, assessment_id: str) -> RiskAssessment:
        with self._session_factory() as db:
            assessment = db.get(RiskAssessment, assessment_id)
        if assessment is None:
            raise NotFoundError(f"Risk assessment {assessment_id} not found", assessment_id=assessment_id)
        return assessment

    def get_history(self, deadline_id: str, limit: int | None = None) -> list[RiskAssessment]:
        """Assessments for a deadline, oldest first."""
        with self._session_factory() as db:
            query = (
                db.query(RiskAssessment)
                .filter(RiskAssessment.deadline_id == deadline_id)
                .order_by(RiskAssessment.computed_at.desc())
            )
            if limit:
                query = query.limit(limit)
            return list(reversed(query.all()))

    def needs_rescore(
        self,
        deadline: ComplianceDeadline,
        last: RiskAssessment | None,
        now: datetime,
    ) -> bool:
        """Whether a deadline's current assessment is out of date.

        True when there is none, when it is older than the staleness
        window, or when the deadline crossed a days-remaining boundary
        since it was computed.
        """
        if last is None:
            return True
        if now - last.computed_at >= timedelta(minutes=self.settings.risk_staleness_minutes):
            return True
        return self._tier(deadline, last.computed_at) != self._tier(deadline, now)

    def _tier(self, deadline: ComplianceDeadline, at: datetime) -> int:
        return bisect.bisect_left(self.settings.deadline_tier_days, deadline.days_remaining(at))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def run_assessment(
        self, deadline_id: str, now: datetime | None = None
    ) -> tuple[RiskAssessment, RiskAssessment | None]:
        """Score a deadline from a fresh read and persist the result.

        Returns:
            (new assessment, the assessment it superseded or None)

        Raises:
            DataUnavailable: the deadline could not be read
        """
        now = now or utcnow()
        deadline = self.store.get_deadline(deadline_id)

        async with self.locks.deadline(deadline_id):
            with self._session_factory() as db:
                previous = self._current(db, deadline_id)
                history = (
                    db.query(RiskAssessment)
                    .filter(RiskAssessment.deadline_id == deadline_id)
                    .order_by(RiskAssessment.computed_at.desc())
                    .limit(max(1, self.settings.risk_trend_window))
                    .all()
                )
                history.reverse()

                result = self.scorer.score(deadline, history, now)
                assessment = result.to_assessment(deadline_id, now)
                db.add(assessment)
                db.flush()
                if previous is not None:
                    previous.superseded_by = assessment.id

        logger.info(
            f"Deadline {deadline_id} scored {assessment.risk_score:.2f} ({assessment.risk_level})"
            + (f", was {previous.risk_score:.2f} ({previous.risk_level})" if previous else "")
        )
        return assessment, previous
