"""
Pydantic Models/Schemas for API
================================
Request and response models for the TrialGuard API.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum


# =============================================================================
# ENUMS
# =============================================================================

class SignalStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"


class Priority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# =============================================================================
# DOMAIN DATA SCHEMAS
# =============================================================================

class AnalyzeRequest(BaseModel):
    trial_id: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1, max_length=20)
    source: str = Field(..., min_length=1)
    record_ids: Optional[List[str]] = None


class DomainRecordRequest(BaseModel):
    trial_id: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1, max_length=20)
    source: str = Field(..., min_length=1)
    record_id: str = Field(..., min_length=1)
    record_data: Dict[str, Any]
    analyze: bool = True


class DomainRecordResponse(BaseModel):
    trial_id: str
    domain: str
    source: str
    record_id: str
    version: int
    analysis: Optional[Dict[str, Any]] = None
    analysis_queued: bool = False


class AnalyzeResponse(BaseModel):
    trial_id: str
    domain: str
    source: str
    records_evaluated: int
    findings: List[Dict[str, Any]]
    plan: Dict[str, Any]
    materialization: Dict[str, Any]
    notifications_sent: int
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


# =============================================================================
# SIGNAL & TASK SCHEMAS
# =============================================================================

class SignalListResponse(BaseModel):
    signals: List[Dict[str, Any]]
    total: int


class TaskListResponse(BaseModel):
    tasks: List[Dict[str, Any]]
    total: int


class TaskStatusUpdateRequest(BaseModel):
    status: TaskStatus
    note: Optional[str] = None
    actor: Optional[str] = None


# =============================================================================
# NOTIFICATION SCHEMAS
# =============================================================================

class NotificationListResponse(BaseModel):
    notifications: List[Dict[str, Any]]
    total: int
    unread: int


class MarkReadRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    notification_id: Optional[int] = None
    all: bool = False
