"""
TRIALGUARD - Database Enums
============================
Enum types for consistent database values.
"""

from enum import Enum


# =============================================================================
# DISCREPANCY ENUMS
# =============================================================================

class Severity(str, Enum):
    """Discrepancy severity, also used as signal/task priority."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        """Sort rank, most severe first."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class DiscrepancyType(str, Enum):
    """Kinds of discrepancy a rule can detect."""
    MISSING_FIELD = "missing_field"
    OUT_OF_RANGE = "out_of_range"
    INVALID_VALUE = "invalid_value"
    INCONSISTENT_CROSS_FIELD = "inconsistent_cross_field"
    STALE_DATA = "stale_data"
    MALFORMED_DATA = "malformed_data"


class SignalType(str, Enum):
    """Risk category shown on the signal detection board."""
    SITE_RISK = "Site Risk"
    SAFETY_RISK = "Safety Risk"
    PD_RISK = "PD Risk"
    LAB_TESTING_RISK = "LAB Testing Risk"
    AE_RISK = "AE Risk"
    DATA_QUALITY_RISK = "Data Quality Risk"


class DetectionType(str, Enum):
    """How a signal was raised."""
    AUTOMATED = "Automated"
    RULE_BASED = "Rule-based"
    MANUAL = "Manual"


# =============================================================================
# WORKFLOW ENUMS
# =============================================================================

class SignalStatus(str, Enum):
    """Signal lifecycle status."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


OPEN_SIGNAL_STATUSES = (SignalStatus.OPEN.value, SignalStatus.IN_PROGRESS.value)


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"


# Statuses the workflow may auto-complete when data is corrected
AUTO_CLOSABLE_TASK_STATUSES = (TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value)


# =============================================================================
# NOTIFICATION ENUMS
# =============================================================================

class NotificationType(str, Enum):
    """Types of notifications."""
    TASK = "task"


class NotificationKind(str, Enum):
    """Workflow event a task notification describes."""
    CREATED = "created"
    AUTO_RESOLVED = "auto_resolved"


class NotificationPriority(str, Enum):
    """Notification priority (lower-cased severity)."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
