"""Compliance deadline model.

The deadlines table belongs to the CRUD layer. The engine only reads
due date, completion, status and priority from it and never writes.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.core.database import Base
from app.schemas.enums import DeadlineStatus


class ComplianceDeadline(Base):
    """A regulatory obligation with a due date."""

    __tablename__ = "compliance_deadlines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(100), nullable=False)  # regulatory body / domain
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeadlineStatus.PENDING.value
    )
    completion_percentage: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_compliance_deadlines_status", "status"),
        Index("ix_compliance_deadlines_due_at", "due_at"),
    )

    def __repr__(self) -> str:
        return f"<ComplianceDeadline {self.id}: {self.title} [{self.status}]>"

    @property
    def is_completed(self) -> bool:
        return self.status == DeadlineStatus.COMPLETED.value

    def effective_status(self, now: datetime) -> DeadlineStatus:
        """Status with the automatic overdue transition applied.

        A deadline past its due date that is not completed is overdue even
        if the CRUD layer has not yet written that status.
        """
        if not self.is_completed and self.due_at < now:
            return DeadlineStatus.OVERDUE
        return DeadlineStatus(self.status)

    def days_remaining(self, now: datetime) -> float:
        """Fractional days until the due date (negative once past due)."""
        return (self.due_at - now).total_seconds() / 86400.0
