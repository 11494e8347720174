"""Error types raised by the risk and notification engine.

Every error carries a stable code so the API layer and the
observability sink can classify it without string matching.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes."""

    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1004"
    INVALID_TRANSITION = "E1009"
    DATA_UNAVAILABLE = "E2000"
    RECIPIENT_RESOLUTION_FAILED = "E3001"
    CHANNEL_DELIVERY_FAILED = "E4001"
    ESCALATION_EXHAUSTED = "E5001"


class DeadlineEngineError(Exception):
    """Base exception for the engine."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and events."""
        return {
            "error": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class DataUnavailable(DeadlineEngineError):
    """The source deadline record could not be read."""

    code = ErrorCode.DATA_UNAVAILABLE


class RecipientResolutionFailed(DeadlineEngineError):
    """The recipient directory lookup failed."""

    code = ErrorCode.RECIPIENT_RESOLUTION_FAILED


class ChannelDeliveryFailed(DeadlineEngineError):
    """A single channel send failed."""

    code = ErrorCode.CHANNEL_DELIVERY_FAILED

    def __init__(self, message: str, channel: str, failure_reason: str = "unknown", **details: Any) -> None:
        super().__init__(message, channel=channel, failure_reason=failure_reason, **details)
        self.channel = channel
        self.failure_reason = failure_reason


class EscalationExhausted(DeadlineEngineError):
    """A notification failed at the highest escalation level."""

    code = ErrorCode.ESCALATION_EXHAUSTED


class ValidationError(DeadlineEngineError):
    """A notification spec or command argument is malformed."""

    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(DeadlineEngineError):
    """The referenced entity does not exist."""

    code = ErrorCode.NOT_FOUND


class InvalidTransitionError(DeadlineEngineError):
    """The command is not legal in the entity's current state."""

    code = ErrorCode.INVALID_TRANSITION
