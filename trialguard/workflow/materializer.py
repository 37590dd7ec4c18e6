"""
TRIALGUARD - Task/Signal Materializer
======================================
Applies a reconciliation plan to the database.

Every plan is applied inside one transaction: a Signal is never committed
without its Task. Results are returned as plain snapshots so notification
dispatch can run after the commit, outside the transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trialguard.config import WorkflowConfig, DEFAULT_WORKFLOW_CONFIG
from trialguard.database.connection import DatabaseManager, get_db_manager
from trialguard.database.enums import (
    SignalStatus, TaskStatus, NotificationKind, OPEN_SIGNAL_STATUSES, AUTO_CLOSABLE_TASK_STATUSES,
)
from trialguard.database.models import Signal, Task, utcnow
from trialguard.exceptions import MaterializationError
from trialguard.quality.evaluator import DiscrepancyFinding
from .reconciler import ActionType, IssueKey, PlannedAction, ReconciliationPlan, ResolveReason

logger = logging.getLogger(__name__)

AUTO_RESOLVED_NOTE = "auto-resolved: underlying data corrected"
RECORD_REMOVED_NOTE = "auto-resolved: source record removed"
PENDING_REVIEW_NOTE = "underlying data corrected while pending review; status left for the reviewer"


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class TaskEvent:
    """Snapshot of a task after a workflow change, safe to use after commit."""
    kind: NotificationKind
    task_id: str
    detection_id: str
    title: str
    description: str
    priority: str
    status: str
    assigned_to: str
    due_date: datetime
    trial_id: str
    domain: str
    source: str
    record_id: str
    discrepancy_type: str
    data_context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_task(cls, kind: NotificationKind, task: Task, signal: Signal) -> 'TaskEvent':
        return cls(
            kind=kind,
            task_id=task.task_id,
            detection_id=signal.detection_id,
            title=task.title,
            description=task.description,
            priority=task.priority,
            status=task.status,
            assigned_to=task.assigned_to,
            due_date=task.due_date,
            trial_id=task.trial_id,
            domain=task.domain,
            source=task.source,
            record_id=task.record_id,
            discrepancy_type=signal.discrepancy_type,
            data_context=dict(task.data_context or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "task_id": self.task_id,
            "detection_id": self.detection_id,
            "title": self.title,
            "priority": self.priority,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "trial_id": self.trial_id,
            "domain": self.domain,
            "source": self.source,
            "record_id": self.record_id,
            "discrepancy_type": self.discrepancy_type,
        }


@dataclass
class MaterializationResult:
    """What one plan application changed."""
    created: List[TaskEvent] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    resolved: List[TaskEvent] = field(default_factory=list)
    resolved_signals: List[str] = field(default_factory=list)
    repaired: List[TaskEvent] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.resolved_signals or self.repaired)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": [e.to_dict() for e in self.created],
            "updated": list(self.updated),
            "resolved": [e.to_dict() for e in self.resolved],
            "resolved_signals": list(self.resolved_signals),
            "repaired": [e.to_dict() for e in self.repaired],
        }


# ============================================================
# MATERIALIZER
# ============================================================

class TaskSignalMaterializer:
    """
    Turns planned actions into Signal and Task rows.

    - create: open Signal + not_started Task, role and due date from config
    - update: refresh Signal observation/priority and Task text, keep Task status
    - resolve: Signal resolved; Task completed only if nobody is reviewing it
    """

    def __init__(self, db: Optional[DatabaseManager] = None,
                 config: Optional[WorkflowConfig] = None):
        self._db = db
        self.config = config or DEFAULT_WORKFLOW_CONFIG

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            self._db = get_db_manager()
        return self._db

    def due_date_for(self, severity: str, now: datetime) -> datetime:
        return now + timedelta(days=self.config.due_days(severity))

    def apply(
        self,
        plan: ReconciliationPlan,
        session: Optional[Session] = None,
        now: Optional[datetime] = None,
        batch_key: Optional[Tuple[str, str, str]] = None,
    ) -> MaterializationResult:
        """
        Apply a plan atomically.

        Args:
            plan: Actions from the reconciler
            session: Open session whose transaction the caller commits; when
                omitted, a session is opened and committed here
            now: Timestamp for created/resolved rows and due dates
            batch_key: (trial_id, domain, source) to check for signals left
                without a task by an earlier failure

        Returns:
            MaterializationResult with snapshots of affected tasks

        Raises:
            MaterializationError: the transaction was rolled back
        """
        now = now or utcnow()
        try:
            if session is not None:
                return self._apply(session, plan, now, batch_key)
            with self.db.session() as own_session:
                return self._apply(own_session, plan, now, batch_key)
        except SQLAlchemyError as e:
            raise MaterializationError(f"Could not apply plan: {e}") from e

    def _apply(self, session: Session, plan: ReconciliationPlan, now: datetime,
               batch_key: Optional[Tuple[str, str, str]]) -> MaterializationResult:
        result = MaterializationResult()

        for action in plan.actions:
            if action.action == ActionType.CREATE:
                self._create(session, action, now, result)
            elif action.action == ActionType.UPDATE:
                self._update(session, action, now, result)
            elif action.action == ActionType.RESOLVE:
                self._resolve(session, action, now, result)
            session.flush()

        if batch_key is not None:
            self._repair(session, batch_key, now, result)

        logger.info(
            f"Materialized plan: {len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.resolved_signals)} resolved, {len(result.repaired)} repaired"
        )
        return result

    # ---------------------------------------------------------------- create

    def _find_open_signal(self, session: Session, key: IssueKey) -> Optional[Signal]:
        return session.query(Signal).filter(
            Signal.trial_id == key.trial_id,
            Signal.domain == key.domain,
            Signal.source == key.source,
            Signal.record_id == key.record_id,
            Signal.discrepancy_type == key.discrepancy_type,
            Signal.status.in_(OPEN_SIGNAL_STATUSES),
        ).first()

    def _create(self, session: Session, action: PlannedAction, now: datetime,
                result: MaterializationResult) -> None:
        finding = action.finding
        existing = self._find_open_signal(session, action.key)
        if existing is not None:
            # Another run got here first; fall back to an in-place update
            logger.debug(f"Open signal already exists for {action.key}, updating instead")
            self._refresh(existing, finding, now)
            result.updated.append(existing.detection_id)
            return

        signal = Signal(
            trial_id=finding.trial_id,
            domain=finding.domain,
            source=finding.source,
            record_id=finding.record_id,
            discrepancy_type=finding.discrepancy_type.value,
            title=finding.title,
            signal_type=finding.signal_type.value,
            data_reference=f"{finding.domain}/{finding.source}/{finding.record_id}",
            observation=finding.message,
            recommendation=finding.recommended_action,
            rule_id=finding.rule_id,
            priority=finding.severity.value,
            status=SignalStatus.OPEN.value,
            created_at=now,
            updated_at=now,
        )
        session.add(signal)
        session.flush()

        task = self._new_task(signal, finding, now)
        session.add(task)
        session.flush()

        result.created.append(TaskEvent.from_task(NotificationKind.CREATED, task, signal))

    def _new_task(self, signal: Signal, finding: Optional[DiscrepancyFinding], now: datetime) -> Task:
        recommended = finding.recommended_action if finding else signal.recommendation
        context: Dict[str, Any] = {
            'detection_id': signal.detection_id,
            'discrepancy_type': signal.discrepancy_type,
            'rule_id': signal.rule_id,
        }
        if finding is not None:
            context['affected_fields'] = list(finding.affected_fields)
            context.update(finding.context)

        return Task(
            signal=signal,
            trial_id=signal.trial_id,
            title=signal.title,
            description=self._describe(signal.observation, recommended, signal),
            priority=signal.priority,
            status=TaskStatus.NOT_STARTED.value,
            assigned_to=self.config.role_for(signal.domain, signal.discrepancy_type),
            due_date=self.due_date_for(signal.priority, now),
            domain=signal.domain,
            source=signal.source,
            record_id=signal.record_id,
            data_context=context,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _describe(observation: str, recommended: Optional[str], signal: Signal) -> str:
        lines = [observation]
        if recommended:
            lines.append(f"Recommended action: {recommended}")
        lines.append(f"Record: {signal.domain}/{signal.source}/{signal.record_id}")
        return '\n'.join(lines)

    # ---------------------------------------------------------------- update

    def _refresh(self, signal: Signal, finding: DiscrepancyFinding, now: datetime) -> None:
        signal.priority = finding.severity.value
        signal.observation = finding.message
        signal.title = finding.title
        signal.recommendation = finding.recommended_action
        signal.updated_at = now

        task = signal.task
        if task is not None:
            task.priority = finding.severity.value
            task.title = finding.title
            task.description = self._describe(finding.message, finding.recommended_action, signal)
            context = dict(task.data_context or {})
            context.update(finding.context)
            context['affected_fields'] = list(finding.affected_fields)
            task.data_context = context
            task.updated_at = now

    def _update(self, session: Session, action: PlannedAction, now: datetime,
                result: MaterializationResult) -> None:
        signal = session.get(Signal, action.signal_id) if action.signal_id else None
        if signal is None or not signal.is_open:
            signal = self._find_open_signal(session, action.key)
        if signal is None:
            # Resolved concurrently; the finding still stands, so raise it again
            self._create(session, PlannedAction(
                action=ActionType.CREATE, key=action.key, severity=action.severity, finding=action.finding,
            ), now, result)
            return
        self._refresh(signal, action.finding, now)
        result.updated.append(signal.detection_id)

    # ---------------------------------------------------------------- resolve

    def _resolve(self, session: Session, action: PlannedAction, now: datetime,
                 result: MaterializationResult) -> None:
        signal = session.get(Signal, action.signal_id) if action.signal_id else None
        if signal is None or not signal.is_open:
            return

        signal.status = SignalStatus.RESOLVED.value
        signal.resolved_at = now
        signal.updated_at = now
        result.resolved_signals.append(signal.detection_id)

        task = signal.task
        if task is None:
            return

        note = RECORD_REMOVED_NOTE if action.reason == ResolveReason.RECORD_DELETED else AUTO_RESOLVED_NOTE
        if task.status in AUTO_CLOSABLE_TASK_STATUSES:
            task.status = TaskStatus.COMPLETED.value
            task.completed_at = now
            task.updated_at = now
            task.append_note(note, at=now)
            result.resolved.append(TaskEvent.from_task(NotificationKind.AUTO_RESOLVED, task, signal))
        elif task.status == TaskStatus.PENDING_REVIEW.value:
            task.append_note(PENDING_REVIEW_NOTE, at=now)
            task.updated_at = now
            result.resolved.append(TaskEvent.from_task(NotificationKind.AUTO_RESOLVED, task, signal))
        # completed tasks are left as they are

    # ---------------------------------------------------------------- repair

    def _repair(self, session: Session, batch_key: Tuple[str, str, str], now: datetime,
                result: MaterializationResult) -> None:
        trial_id, domain, source = batch_key
        orphans = session.query(Signal).outerjoin(Task, Task.signal_id == Signal.id).filter(
            Signal.trial_id == trial_id,
            Signal.domain == domain,
            Signal.source == source,
            Signal.status.in_(OPEN_SIGNAL_STATUSES),
            Task.id.is_(None),
        ).all()

        for signal in orphans:
            logger.warning(f"Signal {signal.detection_id} has no task, creating one")
            task = self._new_task(signal, None, now)
            session.add(task)
            session.flush()
            result.repaired.append(TaskEvent.from_task(NotificationKind.CREATED, task, signal))
