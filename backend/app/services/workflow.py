"""
Workflow Service Bridge
=======================
Bridges FastAPI to the data quality workflow and its repositories.
"""

import logging
from typing import Any, Dict, List, Optional

from trialguard.database.connection import DatabaseManager, get_db_manager
from trialguard.database.models import Signal, Task
from trialguard.database.repositories import DomainRecordRepository, SignalRepository, TaskRepository
from trialguard.notifications.notification_service import NotificationService
from trialguard.workflow.runner import DataQualityWorkflow, IngestionEvent, get_workflow

logger = logging.getLogger(__name__)


def signal_to_dict(signal: Signal) -> Dict[str, Any]:
    return {
        "detection_id": signal.detection_id,
        "trial_id": signal.trial_id,
        "title": signal.title,
        "signal_type": signal.signal_type,
        "detection_type": signal.detection_type,
        "discrepancy_type": signal.discrepancy_type,
        "domain": signal.domain,
        "source": signal.source,
        "record_id": signal.record_id,
        "data_reference": signal.data_reference,
        "observation": signal.observation,
        "recommendation": signal.recommendation,
        "priority": signal.priority,
        "status": signal.status,
        "task_id": signal.task.task_id if signal.task else None,
        "created_by": signal.created_by,
        "created_at": signal.created_at.isoformat() if signal.created_at else None,
        "updated_at": signal.updated_at.isoformat() if signal.updated_at else None,
        "resolved_at": signal.resolved_at.isoformat() if signal.resolved_at else None,
    }


def task_to_dict(task: Task) -> Dict[str, Any]:
    return {
        "task_id": task.task_id,
        "detection_id": task.signal.detection_id if task.signal else None,
        "trial_id": task.trial_id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "status": task.status,
        "assigned_to": task.assigned_to,
        "due_date": task.due_date.isoformat() if task.due_date else None,
        "domain": task.domain,
        "source": task.source,
        "record_id": task.record_id,
        "data_context": task.data_context,
        "notes": task.notes,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


class WorkflowService:
    """Query and command surface used by the API routes."""

    def __init__(self, workflow: Optional[DataQualityWorkflow] = None,
                 db: Optional[DatabaseManager] = None):
        self._workflow = workflow
        self._db = db or (workflow.db if workflow else None)
        self.notifications = NotificationService(self._db)

    @property
    def workflow(self) -> DataQualityWorkflow:
        if self._workflow is None:
            self._workflow = get_workflow()
        return self._workflow

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            self._db = get_db_manager()
        return self._db

    # -------------------------------------------------------------- records

    def ingest_record(self, trial_id: str, domain: str, source: str, record_id: str,
                      record_data: Dict[str, Any]) -> Dict[str, Any]:
        with self.db.session() as session:
            record = DomainRecordRepository(session).upsert(trial_id, domain, source, record_id, record_data)
            return {
                "trial_id": record.trial_id,
                "domain": record.domain,
                "source": record.source,
                "record_id": record.record_id,
                "version": record.version,
            }

    def delete_record(self, trial_id: str, domain: str, source: str, record_id: str) -> bool:
        with self.db.session() as session:
            return DomainRecordRepository(session).delete(trial_id, domain, source, record_id)

    def analyze(self, trial_id: str, domain: str, source: str,
                record_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.workflow.analyze_domain_data(trial_id, domain, source, record_ids).to_dict()

    def analyze_in_background(self, trial_id: str, domain: str, source: str,
                              record_ids: Optional[List[str]] = None) -> None:
        self.workflow.submit(IngestionEvent(trial_id, domain, source, record_ids))

    # ------------------------------------------------------------- signals

    def get_signals(self, **filters) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            return [signal_to_dict(s) for s in SignalRepository(session).find(**filters)]

    def get_signal(self, detection_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            signal = SignalRepository(session).get_by_detection_id(detection_id)
            return signal_to_dict(signal) if signal else None

    def get_signal_summary(self, trial_id: Optional[str] = None) -> Dict[str, Any]:
        with self.db.session() as session:
            summary = SignalRepository(session).summary(trial_id)
            tasks = TaskRepository(session)
            summary["tasks_by_status"] = tasks.count_by_status(trial_id)
            summary["tasks_overdue"] = tasks.count_overdue()
            return summary

    # --------------------------------------------------------------- tasks

    def get_tasks(self, **filters) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            return [task_to_dict(t) for t in TaskRepository(session).find(**filters)]

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            task = TaskRepository(session).get_by_task_id(task_id)
            return task_to_dict(task) if task else None

    def update_task_status(self, task_id: str, status: str, note: Optional[str] = None,
                           actor: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            task = TaskRepository(session).transition(task_id, status, note=note, actor=actor)
            return task_to_dict(task) if task else None


# Keep a global instance
_service_instance: Optional[WorkflowService] = None


def get_workflow_service() -> WorkflowService:
    """Get singleton instance of the workflow service."""
    global _service_instance
    if _service_instance is None:
        _service_instance = WorkflowService()
    return _service_instance


def set_workflow_service(service: Optional[WorkflowService]) -> None:
    """Replace the singleton (tests, embedded use)."""
    global _service_instance
    _service_instance = service
