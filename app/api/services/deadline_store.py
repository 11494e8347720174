"""Read-only access to the CRUD layer's deadline table."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from app.core.database import get_db_context
from app.core.exceptions import DataUnavailable
from app.models.deadline import ComplianceDeadline
from app.schemas.enums import DeadlineStatus

logger = logging.getLogger(__name__)


@dataclass
class DeadlineFilter:
    """Selection criteria for listing deadlines."""

    statuses: list[DeadlineStatus] = field(default_factory=list)
    exclude_completed: bool = False
    due_before: datetime | None = None
    ids: list[str] | None = None


class DeadlineStore(ABC):
    """Read interface onto tracked deadlines."""

    @abstractmethod
    def list_deadlines(self, filter: DeadlineFilter | None = None) -> list[ComplianceDeadline]:
        ...

    @abstractmethod
    def get_deadline(self, deadline_id: str) -> ComplianceDeadline:
        """Fetch one deadline or raise DataUnavailable."""


class SqlDeadlineStore(DeadlineStore):
    """Deadline store backed by the shared SQL database."""

    def __init__(self, session_factory=get_db_context) -> None:
        self._session_factory = session_factory

    def list_deadlines(self, filter: DeadlineFilter | None = None) -> list[ComplianceDeadline]:
        filter = filter or DeadlineFilter()
        try:
            with self._session_factory() as db:
                query = db.query(ComplianceDeadline)
                if filter.statuses:
                    query = query.filter(
                        ComplianceDeadline.status.in_([s.value for s in filter.statuses])
                    )
                if filter.exclude_completed:
                    query = query.filter(ComplianceDeadline.status != DeadlineStatus.COMPLETED.value)
                if filter.due_before is not None:
                    query = query.filter(ComplianceDeadline.due_at <= filter.due_before)
                if filter.ids is not None:
                    query = query.filter(ComplianceDeadline.id.in_(filter.ids))
                return query.order_by(ComplianceDeadline.due_at).all()
        except SQLAlchemyError as e:
            logger.warning(f"Deadline listing failed: {e}")
            raise DataUnavailable("Deadline store unavailable") from e

    def get_deadline(self, deadline_id: str) -> ComplianceDeadline:
        try:
            with self._session_factory() as db:
                deadline = db.get(ComplianceDeadline, deadline_id)
        except SQLAlchemyError as e:
            logger.warning(f"Deadline {deadline_id} could not be read: {e}")
            raise DataUnavailable(f"Deadline {deadline_id} could not be read", deadline_id=deadline_id) from e

        if deadline is None:
            raise DataUnavailable(f"Deadline {deadline_id} not found", deadline_id=deadline_id)
        return deadline
