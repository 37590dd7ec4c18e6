"""
TRIALGUARD - Data Quality Workflow
===================================
Runs evaluation, reconciliation, materialization and notification for one
batch of domain records.

A batch is identified by (trial_id, domain, source). Runs of the same batch
serialize on a per-batch lock and re-read the current record state after
acquiring it, so the last completed run always reflects the latest data.
Reconciliation and materialization share one transaction; notification
dispatch follows the commit.

Usage:
    workflow = DataQualityWorkflow()
    result = workflow.analyze_domain_data('TRIAL-001', 'LB', 'Central Lab')
    future = workflow.submit(IngestionEvent('TRIAL-001', 'LB', 'Central Lab', ['LB-001']))
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from trialguard.config import WorkflowConfig, DEFAULT_WORKFLOW_CONFIG
from trialguard.database.connection import DatabaseManager, get_db_manager
from trialguard.database.models import utcnow
from trialguard.database.repositories import DomainRecordRepository, SignalRepository
from trialguard.exceptions import TrialGuardError, WorkflowError
from trialguard.notifications.dispatcher import NotificationDispatcher
from trialguard.notifications.email_sink import EmailSink, LoggingEmailTransport, QueuedEmailSink
from trialguard.quality.evaluator import DiscrepancyEvaluator, DiscrepancyFinding
from .locks import BatchKey, BatchLockRegistry
from .materializer import MaterializationResult, TaskSignalMaterializer
from .reconciler import IssueReconciler, ReconciliationPlan

logger = logging.getLogger(__name__)


@dataclass
class IngestionEvent:
    """Records of one batch were inserted, updated or deleted."""
    trial_id: str
    domain: str
    source: str
    record_ids: Optional[List[str]] = None

    @property
    def batch_key(self) -> BatchKey:
        return (self.trial_id, self.domain.upper(), self.source)


@dataclass
class WorkflowRunResult:
    """Outcome of one batch run."""
    batch_key: BatchKey
    records_evaluated: int
    findings: List[DiscrepancyFinding]
    plan: ReconciliationPlan
    materialization: MaterializationResult
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        trial_id, domain, source = self.batch_key
        return {
            "trial_id": trial_id,
            "domain": domain,
            "source": source,
            "records_evaluated": self.records_evaluated,
            "findings": [f.to_dict() for f in self.findings],
            "plan": self.plan.to_dict(),
            "materialization": self.materialization.to_dict(),
            "notifications_sent": len(self.notifications),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class DataQualityWorkflow:
    """Orchestrates the data quality pipeline for ingestion batches."""

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        config: Optional[WorkflowConfig] = None,
        evaluator: Optional[DiscrepancyEvaluator] = None,
        reconciler: Optional[IssueReconciler] = None,
        materializer: Optional[TaskSignalMaterializer] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        email_sink: Optional[EmailSink] = None,
        locks: Optional[BatchLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db or get_db_manager()
        self.config = config or DEFAULT_WORKFLOW_CONFIG
        self.clock = clock or utcnow
        self.evaluator = evaluator or DiscrepancyEvaluator(
            stale_after_days=self.config.stale_after_days, clock=self.clock
        )
        self.reconciler = reconciler or IssueReconciler()
        self.materializer = materializer or TaskSignalMaterializer(self.db, self.config)

        self._owned_sink: Optional[QueuedEmailSink] = None
        if email_sink is None and dispatcher is None and self.config.email_enabled:
            self._owned_sink = QueuedEmailSink(
                LoggingEmailTransport(),
                max_queue_size=self.config.email_queue_size,
                send_timeout=self.config.email_timeout_seconds,
                max_retries=self.config.email_max_retries,
                initial_retry_delay=self.config.email_retry_backoff,
            )
            self._owned_sink.start()
            email_sink = self._owned_sink

        self.dispatcher = dispatcher or NotificationDispatcher(
            self.db, self.config, email_sink=email_sink
        )
        self.locks = locks or BatchLockRegistry()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------ runs

    def analyze_domain_data(
        self,
        trial_id: str,
        domain: str,
        source: str,
        record_ids: Optional[List[str]] = None,
    ) -> WorkflowRunResult:
        """
        Evaluate a batch (or some records of it) and bring signals, tasks and
        notifications up to date. Safe to call repeatedly.

        Args:
            trial_id: Trial identifier
            domain: Domain code
            source: Source system name
            record_ids: Restrict the run to these records; records in the list
                that no longer exist have their open signals resolved

        Returns:
            WorkflowRunResult

        Raises:
            WorkflowError: the batch could not be applied; nothing was changed
        """
        if not trial_id or not domain or not source:
            raise ValueError("trial_id, domain and source are required")

        key: BatchKey = (trial_id, domain.upper(), source)
        started = self.clock()

        with self.locks.hold(key):
            try:
                with self.db.session() as session:
                    records = DomainRecordRepository(session).get_batch(
                        trial_id, domain, source, record_ids
                    )
                    findings: List[DiscrepancyFinding] = []
                    for record in records:
                        findings.extend(self.evaluator.evaluate(
                            key[1],
                            record.record_data or {},
                            previous=record.previous_data,
                            trial_id=trial_id,
                            source=source,
                            record_id=record.record_id,
                        ))

                    open_signals = SignalRepository(session).get_open_for_batch(*key)
                    present = {r.record_id for r in records}
                    if record_ids is not None:
                        evaluated: Optional[Set[str]] = set(record_ids)
                        deleted = evaluated - present
                    else:
                        evaluated = None
                        deleted = {s.record_id for s in open_signals} - present

                    plan = self.reconciler.reconcile(
                        findings, open_signals,
                        evaluated_record_ids=evaluated,
                        deleted_record_ids=deleted,
                    )
                    materialization = self.materializer.apply(
                        plan, session=session, now=started, batch_key=key
                    )
            except TrialGuardError as e:
                logger.error(f"Data quality run failed for {key}: {e}")
                raise WorkflowError(key, str(e)) from e
            except SQLAlchemyError as e:
                logger.error(f"Data quality run failed for {key}: {e}")
                raise WorkflowError(key, str(e)) from e

            notifications = self.dispatcher.dispatch(materialization)

        finished = self.clock()
        logger.info(
            f"Analyzed {len(records)} {key[1]} records for {trial_id}/{source}: "
            f"{len(findings)} findings, {len(materialization.created)} tasks created, "
            f"{len(materialization.resolved_signals)} signals resolved"
        )
        return WorkflowRunResult(
            batch_key=key,
            records_evaluated=len(records),
            findings=findings,
            plan=plan,
            materialization=materialization,
            notifications=notifications,
            started_at=started,
            finished_at=finished,
        )

    def handle_ingestion_event(self, event: IngestionEvent) -> WorkflowRunResult:
        """Run the workflow synchronously for an ingestion event."""
        return self.analyze_domain_data(event.trial_id, event.domain, event.source, event.record_ids)

    def submit(self, event: IngestionEvent) -> Future:
        """Run the workflow for an event in the background. Returns its Future."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="dq-workflow"
            )
        future = self._executor.submit(self.handle_ingestion_event, event)
        future.add_done_callback(lambda f: self._log_background_failure(event, f))
        return future

    @staticmethod
    def _log_background_failure(event: IngestionEvent, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background data quality run failed for {event.batch_key}: {error}")

    def sweep(self) -> List[WorkflowRunResult]:
        """
        Re-evaluate every batch that has records or open signals.

        A failing batch is logged and skipped so the rest still run.
        """
        with self.db.session() as session:
            keys = set(DomainRecordRepository(session).batch_keys())
            keys.update(SignalRepository(session).open_batch_keys())

        results = []
        for trial_id, domain, source in sorted(keys):
            try:
                results.append(self.analyze_domain_data(trial_id, domain, source))
            except WorkflowError as e:
                logger.error(f"Sweep skipped {trial_id}/{domain}/{source}: {e}")
        logger.info(f"Sweep finished: {len(results)}/{len(keys)} batches analyzed")
        return results

    def shutdown(self, wait: bool = True) -> None:
        """Stop background workers."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        if self._owned_sink is not None:
            self._owned_sink.stop()
            self._owned_sink = None


# ============================================================
# SINGLETON ACCESSORS
# ============================================================

_workflow: Optional[DataQualityWorkflow] = None


def get_workflow() -> DataQualityWorkflow:
    """Get singleton workflow."""
    global _workflow
    if _workflow is None:
        _workflow = DataQualityWorkflow()
    return _workflow


def reset_workflow() -> None:
    """Shut down and reset the singleton (for testing)."""
    global _workflow
    if _workflow is not None:
        _workflow.shutdown(wait=False)
        _workflow = None
