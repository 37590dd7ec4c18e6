"""
TRIALGUARD - Data Repositories
===============================
Data access layer for domain records, signals, tasks and users.
"""

import logging
from typing import List, Optional, Dict, Any, Iterable, Tuple
from datetime import datetime

import pandas as pd
from sqlalchemy.orm import Session
from sqlalchemy import func, select

from .models import DomainRecord, Signal, Task, User, NotificationPreference, utcnow
from .enums import SignalStatus, TaskStatus, OPEN_SIGNAL_STATUSES
from .connection import get_db_manager
from trialguard.exceptions import TaskTransitionError

logger = logging.getLogger(__name__)

BatchKey = Tuple[str, str, str]


class BaseRepository:
    """Base repository with common session handling."""
    
    def __init__(self, session: Optional[Session] = None):
        """
        Initialize repository.
        
        Args:
            session: SQLAlchemy session (optional, will create if not provided)
        """
        self._session = session
    
    @property
    def session(self) -> Session:
        """Get or create session."""
        if self._session is None:
            self._session = get_db_manager().get_session()
        return self._session


class DomainRecordRepository(BaseRepository):
    """Repository for ingested domain records."""
    
    def get(self, trial_id: str, domain: str, source: str, record_id: str) -> Optional[DomainRecord]:
        """Get one record by its identity."""
        domain = domain.upper()
        return self.session.query(DomainRecord).filter(
            DomainRecord.trial_id == trial_id,
            DomainRecord.domain == domain,
            DomainRecord.source == source,
            DomainRecord.record_id == record_id,
        ).first()
    
    def get_batch(self, trial_id: str, domain: str, source: str,
                  record_ids: Optional[Iterable[str]] = None) -> List[DomainRecord]:
        """Get all records of a batch, optionally restricted to some record ids."""
        domain = domain.upper()
        query = self.session.query(DomainRecord).filter(
            DomainRecord.trial_id == trial_id,
            DomainRecord.domain == domain,
            DomainRecord.source == source,
        )
        if record_ids is not None:
            query = query.filter(DomainRecord.record_id.in_(list(record_ids)))
        return query.order_by(DomainRecord.record_id).all()
    
    def batch_keys(self) -> List[BatchKey]:
        """All distinct (trial, domain, source) combinations with data."""
        rows = self.session.query(
            DomainRecord.trial_id, DomainRecord.domain, DomainRecord.source
        ).distinct().all()
        return sorted((r[0], r[1], r[2]) for r in rows)
    
    def upsert(self, trial_id: str, domain: str, source: str, record_id: str,
               record_data: Dict[str, Any]) -> DomainRecord:
        """
        Insert a record or replace its field map, keeping the prior version.
        
        Returns:
            The stored record
        """
        domain = domain.upper()
        record = self.get(trial_id, domain, source, record_id)
        if record is None:
            record = DomainRecord(
                trial_id=trial_id,
                domain=domain,
                source=source,
                record_id=record_id,
                record_data=dict(record_data),
                version=1,
            )
            self.session.add(record)
        elif record.record_data != record_data:
            record.previous_data = dict(record.record_data or {})
            record.record_data = dict(record_data)
            record.version = (record.version or 1) + 1
            record.updated_at = utcnow()
        self.session.flush()
        return record
    
    def delete(self, trial_id: str, domain: str, source: str, record_id: str) -> bool:
        """Delete a record. Returns False when it did not exist."""
        record = self.get(trial_id, domain, source, record_id)
        if record:
            self.session.delete(record)
            self.session.flush()
            return True
        return False


class SignalRepository(BaseRepository):
    """Repository for Signal operations."""
    
    def get_by_detection_id(self, detection_id: str) -> Optional[Signal]:
        """Get signal by detection id."""
        return self.session.query(Signal).filter(Signal.detection_id == detection_id).first()
    
    def get_open_for_batch(self, trial_id: str, domain: str, source: str) -> List[Signal]:
        """Get open signals of one batch key."""
        return self.session.query(Signal).filter(
            Signal.trial_id == trial_id,
            Signal.domain == domain,
            Signal.source == source,
            Signal.status.in_(OPEN_SIGNAL_STATUSES),
        ).order_by(Signal.id).all()
    
    def open_batch_keys(self) -> List[BatchKey]:
        """Batch keys that still have open signals."""
        rows = self.session.query(
            Signal.trial_id, Signal.domain, Signal.source
        ).filter(Signal.status.in_(OPEN_SIGNAL_STATUSES)).distinct().all()
        return sorted((r[0], r[1], r[2]) for r in rows)

    def find(
        self,
        trial_id: Optional[str] = None,
        domain: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Signal]:
        """Filter signals for the dashboard, newest first."""
        query = self.session.query(Signal)
        if trial_id:
            query = query.filter(Signal.trial_id == trial_id)
        if domain:
            query = query.filter(Signal.domain == domain)
        if status:
            query = query.filter(Signal.status == status)
        if priority:
            query = query.filter(Signal.priority == priority)
        if record_id:
            query = query.filter(Signal.record_id == record_id)
        return query.order_by(Signal.created_at.desc(), Signal.id.desc()).offset(offset).limit(limit).all()
    
    def count_by_status(self, trial_id: Optional[str] = None) -> Dict[str, int]:
        """Get signal counts by status."""
        query = self.session.query(Signal.status, func.count(Signal.id))
        if trial_id:
            query = query.filter(Signal.trial_id == trial_id)
        results = query.group_by(Signal.status).all()
        return {status: count for status, count in results}
    
    def summary_frame(self, trial_id: Optional[str] = None) -> pd.DataFrame:
        """Signals as a DataFrame for aggregation."""
        stmt = select(
            Signal.trial_id, Signal.domain, Signal.discrepancy_type,
            Signal.priority, Signal.status, Signal.created_at, Signal.resolved_at,
        )
        if trial_id:
            stmt = stmt.where(Signal.trial_id == trial_id)
        return pd.read_sql(stmt, self.session.connection())
    
    def summary(self, trial_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Summary counts for the signal board.
        
        Returns:
            Dict with totals and breakdowns by status, priority, domain and type
        """
        df = self.summary_frame(trial_id)
        if df.empty:
            return {
                'total': 0, 'open': 0, 'by_status': {}, 'by_priority': {},
                'by_domain': {}, 'by_type': {}, 'mean_hours_to_resolve': None,
            }
        
        open_df = df[df['status'].isin(OPEN_SIGNAL_STATUSES)]
        resolved = df.dropna(subset=['resolved_at'])
        mean_hours = None
        if not resolved.empty:
            delta = pd.to_datetime(resolved['resolved_at']) - pd.to_datetime(resolved['created_at'])
            mean_hours = round(delta.dt.total_seconds().mean() / 3600, 2)
        
        return {
            'total': int(len(df)),
            'open': int(len(open_df)),
            'by_status': {k: int(v) for k, v in df['status'].value_counts().items()},
            'by_priority': {k: int(v) for k, v in open_df['priority'].value_counts().items()},
            'by_domain': {k: int(v) for k, v in open_df['domain'].value_counts().items()},
            'by_type': {k: int(v) for k, v in open_df['discrepancy_type'].value_counts().items()},
            'mean_hours_to_resolve': mean_hours,
        }


class TaskRepository(BaseRepository):
    """Repository for Task operations."""
    
    def get_by_task_id(self, task_id: str) -> Optional[Task]:
        """Get task by task id."""
        return self.session.query(Task).filter(Task.task_id == task_id).first()
    
    def find(
        self,
        trial_id: Optional[str] = None,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        priority: Optional[str] = None,
        domain: Optional[str] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Task]:
        """Filter tasks, soonest due first."""
        query = self.session.query(Task)
        if trial_id:
            query = query.filter(Task.trial_id == trial_id)
        if status:
            query = query.filter(Task.status == status)
        if assigned_to:
            query = query.filter(Task.assigned_to == assigned_to)
        if priority:
            query = query.filter(Task.priority == priority)
        if domain:
            query = query.filter(Task.domain == domain)
        return query.order_by(Task.due_date.asc(), Task.id.asc()).offset(offset).limit(limit).all()
    
    def count_by_status(self, trial_id: Optional[str] = None) -> Dict[str, int]:
        """Get task counts by status."""
        query = self.session.query(Task.status, func.count(Task.id))
        if trial_id:
            query = query.filter(Task.trial_id == trial_id)
        results = query.group_by(Task.status).all()
        return {status: count for status, count in results}
    
    def count_overdue(self, now: Optional[datetime] = None) -> int:
        """Open tasks past their due date."""
        now = now or utcnow()
        return self.session.query(func.count(Task.id)).filter(
            Task.status != TaskStatus.COMPLETED.value,
            Task.due_date < now,
        ).scalar()
    
    def transition(self, task_id: str, new_status: str, note: Optional[str] = None,
                   actor: Optional[str] = None) -> Optional[Task]:
        """
        Apply a human status change and mirror it onto the linked signal.
        
        Args:
            task_id: Task identifier
            new_status: Target TaskStatus value
            note: Optional review note
            actor: Who made the change (recorded in the note)
            
        Returns:
            Updated task, or None if not found
            
        Raises:
            TaskTransitionError: the signal is already resolved or closed and
                the task would be moved anywhere but completed
        """
        status = TaskStatus(new_status)
        task = self.get_by_task_id(task_id)
        if task is None:
            return None
        
        signal = task.signal
        if (signal is not None and not signal.is_open
                and status != TaskStatus.COMPLETED and task.status != status.value):
            raise TaskTransitionError(
                task_id, f"signal {signal.detection_id} is {signal.status}; only completion is allowed"
            )
        
        now = utcnow()
        task.status = status.value
        task.updated_at = now
        if status == TaskStatus.COMPLETED:
            task.completed_at = now
        else:
            task.completed_at = None
        if note:
            task.append_note(f"{actor}: {note}" if actor else note, at=now)
        
        if signal is not None and signal.status != SignalStatus.RESOLVED.value:
            if status == TaskStatus.COMPLETED:
                signal.status = SignalStatus.CLOSED.value
                signal.resolved_at = now
            elif status != TaskStatus.NOT_STARTED and signal.status == SignalStatus.OPEN.value:
                signal.status = SignalStatus.IN_PROGRESS.value
            signal.updated_at = now
        
        self.session.flush()
        logger.info(f"Task {task_id} moved to {status.value}")
        return task


class UserRepository(BaseRepository):
    """Repository for the recipient directory."""
    
    def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.session.query(User).filter(User.user_id == user_id).first()
    
    def get_by_roles(self, roles: Iterable[str], trial_id: Optional[str] = None) -> List[User]:
        """Active users holding any of the roles, limited to those with trial access."""
        users = self.session.query(User).filter(
            User.role.in_(list(roles)),
            User.is_active == True,
        ).order_by(User.user_id).all()
        return [u for u in users if u.has_trial_access(trial_id)]
    
    def create(self, user: User, preference: Optional[NotificationPreference] = None) -> User:
        """Create a new user with optional delivery preferences."""
        self.session.add(user)
        if preference is not None:
            preference.user_id = user.user_id
            self.session.add(preference)
        self.session.flush()
        return user
