"""
TRIALGUARD - Database Models
=============================
SQLAlchemy ORM models for the data quality workflow.

Models:
- DomainRecord (ingested clinical domain data, read by the workflow)
- Signal, Task (workflow-owned issue tracking)
- Notification, NotificationReadStatus (in-app fan-out)
- User, NotificationPreference (recipient directory)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    Integer, String, DateTime, ForeignKey, Text, Boolean, Index, UniqueConstraint, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .enums import (
    SignalStatus, TaskStatus, DetectionType, NotificationType, OPEN_SIGNAL_STATUSES,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


_OPEN_SIGNAL_PREDICATE = text(
    "status IN (" + ", ".join(f"'{s}'" for s in OPEN_SIGNAL_STATUSES) + ")"
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# INGESTED DATA
# =============================================================================

class DomainRecord(Base):
    """One clinical domain record (LB, VS, DM, AE, SAE, PD, SV ...) from a source system."""
    __tablename__ = "domain_records"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trial_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(100), nullable=False)
    
    record_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    previous_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    
    __table_args__ = (
        UniqueConstraint('trial_id', 'domain', 'source', 'record_id', name='uq_domain_record'),
        Index('idx_domain_record_batch', 'trial_id', 'domain', 'source'),
    )


# =============================================================================
# SIGNALS & TASKS
# =============================================================================

class Signal(Base):
    """A detected data quality issue on one record, keyed by its natural key."""
    __tablename__ = "signals"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detection_id: Mapped[str] = mapped_column(
        String(60), unique=True, nullable=False,
        default=lambda: f"DQ_{uuid.uuid4().hex[:12].upper()}"
    )
    
    # Natural key
    trial_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(100), nullable=False)
    discrepancy_type: Mapped[str] = mapped_column(String(40), nullable=False)
    
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(40), nullable=False)
    detection_type: Mapped[str] = mapped_column(String(20), default=DetectionType.AUTOMATED.value)
    data_reference: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    observation: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rule_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=SignalStatus.OPEN.value, index=True)
    
    created_by: Mapped[str] = mapped_column(String(50), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    task: Mapped[Optional["Task"]] = relationship(back_populates="signal", uselist=False)
    
    __table_args__ = (
        # At most one open signal per natural key
        Index(
            'uq_signal_open_key',
            'trial_id', 'domain', 'source', 'record_id', 'discrepancy_type',
            unique=True,
            postgresql_where=_OPEN_SIGNAL_PREDICATE,
            sqlite_where=_OPEN_SIGNAL_PREDICATE,
        ),
        Index('idx_signal_batch_status', 'trial_id', 'domain', 'source', 'status'),
    )
    
    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SIGNAL_STATUSES


class Task(Base):
    """Work item assigned to a role for one signal."""
    __tablename__ = "tasks"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(
        String(60), unique=True, nullable=False,
        default=lambda: f"DQ_TASK_{uuid.uuid4().hex[:12].upper()}"
    )
    signal_id: Mapped[int] = mapped_column(ForeignKey('signals.id'), unique=True, nullable=False)
    
    trial_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.NOT_STARTED.value, index=True)
    assigned_to: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    
    # Record context
    domain: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(100), nullable=False)
    data_context: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    created_by: Mapped[str] = mapped_column(String(50), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    signal: Mapped["Signal"] = relationship(back_populates="task")
    
    def append_note(self, note: str, at: Optional[datetime] = None) -> None:
        """Append a timestamped line to the task's review notes."""
        stamp = (at or utcnow()).strftime('%Y-%m-%d %H:%M')
        line = f"[{stamp}] {note}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(Base):
    """In-app notification addressed to roles and/or users."""
    __tablename__ = "notifications"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=NotificationType.TASK.value)
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    trial_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(50), default="data_quality")
    
    related_entity_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(60), nullable=True, index=True)
    
    target_roles: Mapped[List[str]] = mapped_column(JSON, default=list)
    target_users: Mapped[List[str]] = mapped_column(JSON, default=list)
    
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    action_required: Mapped[bool] = mapped_column(Boolean, default=False)
    action_url: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    
    # "<task_id>:<kind>:<target>" - one notification per task event and target
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(250), unique=True, nullable=True)
    
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'type': self.type,
            'priority': self.priority,
            'trial_id': self.trial_id,
            'source': self.source,
            'related_entity_type': self.related_entity_type,
            'related_entity_id': self.related_entity_id,
            'target_roles': list(self.target_roles or []),
            'target_users': list(self.target_users or []),
            'read': self.read,
            'action_required': self.action_required,
            'action_url': self.action_url,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'read_at': self.read_at.isoformat() if self.read_at else None,
        }


class NotificationReadStatus(Base):
    """Per-recipient read state for role-targeted notifications."""
    __tablename__ = "notification_read_status"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int] = mapped_column(ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    read_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    
    __table_args__ = (
        UniqueConstraint('notification_id', 'user_id', name='uq_notification_read'),
    )


# =============================================================================
# RECIPIENTS
# =============================================================================

class User(Base):
    """Directory entry used to resolve role targets to people."""
    __tablename__ = "users"
    
    user_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    study_access: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    
    preference: Mapped[Optional["NotificationPreference"]] = relationship(
        back_populates="user", uselist=False
    )
    
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    
    def has_trial_access(self, trial_id: Optional[str]) -> bool:
        """Users without an access list, or with 'All Studies', see every trial."""
        if not trial_id or not self.study_access:
            return True
        return 'All Studies' in self.study_access or trial_id in self.study_access


class NotificationPreference(Base):
    """Per-user delivery settings."""
    __tablename__ = "notification_preferences"
    
    user_id: Mapped[str] = mapped_column(ForeignKey('users.user_id'), primary_key=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    critical_only: Mapped[bool] = mapped_column(Boolean, default=False)
    
    user: Mapped["User"] = relationship(back_populates="preference")
    
    def allows(self, priority: str, channel: str = 'in_app') -> bool:
        """Whether a notification of this priority may go out on this channel."""
        enabled = self.email_enabled if channel == 'email' else self.in_app_enabled
        if not enabled:
            return False
        if self.critical_only:
            return priority.lower() in ('critical', 'high')
        return True
