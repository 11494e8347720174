"""Shared enums for deadlines, risk assessments and notifications."""

from enum import Enum


class DeadlineStatus(str, Enum):
    """Compliance deadline statuses."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class DeadlinePriority(str, Enum):
    """Compliance deadline priorities."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Categorical risk buckets derived from the risk score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class RecipientType(str, Enum):
    """Recipient tiers, lowest first."""

    INDIVIDUAL = "individual"
    ROLE = "role"
    DEPARTMENT = "department"
    ALL_STAKEHOLDERS = "all_stakeholders"


class NotificationType(str, Enum):
    """Kinds of alert notifications."""

    DEADLINE_REMINDER = "deadline_reminder"
    RISK_ALERT = "risk_alert"
    OVERDUE_WARNING = "overdue_warning"
    ESCALATION = "escalation"
    COMPLETION_CONFIRMATION = "completion_confirmation"
    STATUS_UPDATE = "status_update"


class NotificationPriority(str, Enum):
    """Notification priorities, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"

    def bump(self) -> "NotificationPriority":
        """Return the next-higher priority (critical stays critical)."""
        members = list(NotificationPriority)
        index = members.index(self)
        return members[min(index + 1, len(members) - 1)]


class Channel(str, Enum):
    """Delivery channels."""

    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    PHONE = "phone"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationStatus(str, Enum):
    """Notification lifecycle states."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    READ = "read"
    ACKNOWLEDGED = "acknowledged"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Why a channel delivery attempt failed."""

    INVALID_RECIPIENT = "invalid_recipient"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN = "unknown"


# Statuses in which retryCount is reset to zero
DELIVERED_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.ACKNOWLEDGED,
})

# Statuses from which a dispatch may start
DISPATCHABLE_STATUSES = frozenset({
    NotificationStatus.PENDING,
    NotificationStatus.SCHEDULED,
})
