"""Core module initialization."""

from app.core.config import Settings, get_settings
from app.core.database import (
    Base,
    get_db,
    get_db_context,
    get_db_stats,
    init_db,
)
from app.core.exceptions import (
    DataUnavailable,
    DeadlineEngineError,
    EscalationExhausted,
    InvalidTransitionError,
    NotFoundError,
    RecipientResolutionFailed,
    ValidationError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "get_db_context",
    "get_db_stats",
    "init_db",
    # Errors
    "DeadlineEngineError",
    "DataUnavailable",
    "EscalationExhausted",
    "InvalidTransitionError",
    "NotFoundError",
    "RecipientResolutionFailed",
    "ValidationError",
]
