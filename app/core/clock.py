"""Time helpers.

All persisted timestamps are naive UTC, matching how SQLite stores them.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)
