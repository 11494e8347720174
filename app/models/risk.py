"""Risk assessment model.

Assessments are append-only: a new evaluation is a new row. The only
column that may change after insert is ``superseded_by``, the forward
link written when the next assessment for the same deadline lands.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, String, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.core.database import Base

MUTABLE_COLUMNS = frozenset({"superseded_by"})


class RiskAssessment(Base):
    """Point-in-time risk evaluation of one deadline."""

    __tablename__ = "risk_assessments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    deadline_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("compliance_deadlines.id"), nullable=False
    )
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    # Ordered list of {"name", "impact", "probability"}
    factors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    superseded_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("risk_assessments.id"), nullable=True
    )

    __table_args__ = (
        Index("ix_risk_assessments_deadline_computed", "deadline_id", "computed_at"),
    )

    def __repr__(self) -> str:
        return f"<RiskAssessment {self.deadline_id}: {self.risk_score:.1f} ({self.risk_level})>"

    @property
    def is_current(self) -> bool:
        return self.superseded_by is None


@event.listens_for(RiskAssessment, "before_update")
def _reject_in_place_updates(mapper, connection, target: RiskAssessment) -> None:
    """Refuse updates to anything but the supersession link."""
    state = inspect(target)
    changed = {
        attr.key
        for attr in state.attrs
        if attr.key not in MUTABLE_COLUMNS and attr.history.has_changes()
    }
    if changed:
        raise ValueError(f"RiskAssessment rows are immutable (attempted to change {sorted(changed)})")
