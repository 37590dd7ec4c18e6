"""Tests for applying reconciliation plans to the database."""

from datetime import timedelta

import pytest

from trialguard.database.enums import DiscrepancyType, Severity, SignalStatus, TaskStatus
from trialguard.database.models import Signal, Task
from trialguard.database.repositories import TaskRepository
from trialguard.quality.evaluator import DiscrepancyFinding
from trialguard.workflow.materializer import (
    AUTO_RESOLVED_NOTE,
    PENDING_REVIEW_NOTE,
    RECORD_REMOVED_NOTE,
    TaskSignalMaterializer,
)
from trialguard.workflow.reconciler import IssueReconciler, ResolveReason

from conftest import TRIAL


def make_finding(domain="LB", source="Central Lab", record_id="REC-1",
                 dtype=DiscrepancyType.OUT_OF_RANGE, severity=Severity.HIGH, message="value out of range"):
    return DiscrepancyFinding(
        discrepancy_type=dtype,
        severity=severity,
        message=message,
        trial_id=TRIAL,
        domain=domain,
        source=source,
        record_id=record_id,
        affected_fields=["FIELD"],
        recommended_action="Check the source document",
        rule_id=f"{domain}_RULE",
        title=f"{dtype.value} in {domain} record",
    )


@pytest.fixture
def materializer(db, config):
    return TaskSignalMaterializer(db, config)


def create(materializer, now, *findings):
    plan = IssueReconciler().reconcile(list(findings), [])
    return materializer.apply(plan, now=now)


def open_signals(db):
    with db.session() as session:
        return session.query(Signal).filter(Signal.status.in_(["open", "in_progress"])).all()


class TestCreate:
    def test_creates_signal_and_task_together(self, db, materializer, now):
        result = create(materializer, now, make_finding())

        assert len(result.created) == 1
        event = result.created[0]
        with db.session() as session:
            signal = session.query(Signal).one()
            task = session.query(Task).one()
            assert task.signal_id == signal.id
            assert signal.status == SignalStatus.OPEN.value
            assert signal.priority == "High"
            assert signal.data_reference == "LB/Central Lab/REC-1"
            assert task.status == TaskStatus.NOT_STARTED.value
            assert task.assigned_to == "Data Manager"
            assert task.data_context["affected_fields"] == ["FIELD"]
            assert event.task_id == task.task_id
            assert event.detection_id == signal.detection_id

    @pytest.mark.parametrize("severity,days", [
        (Severity.CRITICAL, 1),
        (Severity.HIGH, 3),
        (Severity.MEDIUM, 7),
        (Severity.LOW, 14),
    ])
    def test_due_date_follows_severity(self, materializer, now, severity, days):
        result = create(materializer, now, make_finding(severity=severity))
        assert result.created[0].due_date == now + timedelta(days=days)

    @pytest.mark.parametrize("domain,dtype,role", [
        ("LB", DiscrepancyType.OUT_OF_RANGE, "Data Manager"),
        ("SV", DiscrepancyType.INVALID_VALUE, "Clinical Research Associate"),
        ("AE", DiscrepancyType.MISSING_FIELD, "Medical Monitor"),
        ("LB", DiscrepancyType.STALE_DATA, "Clinical Research Associate"),
        ("QS", DiscrepancyType.MISSING_FIELD, "Data Manager"),
    ])
    def test_role_assignment(self, materializer, now, domain, dtype, role):
        result = create(materializer, now, make_finding(domain=domain, dtype=dtype))
        assert result.created[0].assigned_to == role

    def test_second_create_for_same_key_becomes_update(self, db, materializer, now):
        """A stale plan never produces a second open signal for one key."""
        plan = IssueReconciler().reconcile([make_finding()], [])
        first = materializer.apply(plan, now=now)
        second = materializer.apply(plan, now=now)

        assert len(first.created) == 1
        assert second.created == []
        assert second.updated == [first.created[0].detection_id]
        assert len(open_signals(db)) == 1


class TestUpdate:
    def test_update_keeps_task_status(self, db, materializer, now):
        created = create(materializer, now, make_finding())
        task_id = created.created[0].task_id
        with db.session() as session:
            TaskRepository(session).transition(task_id, "in_progress")
            signals = session.query(Signal).all()

        changed = make_finding(severity=Severity.CRITICAL, message="value far out of range")
        plan = IssueReconciler().reconcile([changed], signals)
        result = materializer.apply(plan, now=now + timedelta(hours=1))

        assert result.updated == [created.created[0].detection_id]
        with db.session() as session:
            task = session.query(Task).one()
            assert task.status == TaskStatus.IN_PROGRESS.value
            assert task.priority == "Critical"
            assert task.description.startswith("value far out of range")
            assert session.query(Signal).one().observation == "value far out of range"


class TestResolve:
    def _resolve(self, db, materializer, now, deleted=False):
        with db.session() as session:
            signals = session.query(Signal).all()
        plan = IssueReconciler().reconcile(
            [], signals, deleted_record_ids={"REC-1"} if deleted else None
        )
        return materializer.apply(plan, now=now + timedelta(days=1))

    def test_not_started_task_is_completed(self, db, materializer, now):
        create(materializer, now, make_finding())
        result = self._resolve(db, materializer, now)

        assert len(result.resolved_signals) == 1
        assert result.resolved[0].status == TaskStatus.COMPLETED.value
        with db.session() as session:
            signal = session.query(Signal).one()
            task = session.query(Task).one()
            assert signal.status == SignalStatus.RESOLVED.value
            assert signal.resolved_at == now + timedelta(days=1)
            assert task.completed_at == now + timedelta(days=1)
            assert AUTO_RESOLVED_NOTE in task.notes

    def test_in_progress_task_is_completed(self, db, materializer, now):
        created = create(materializer, now, make_finding())
        with db.session() as session:
            TaskRepository(session).transition(created.created[0].task_id, "in_progress")
        result = self._resolve(db, materializer, now)
        assert result.resolved[0].status == TaskStatus.COMPLETED.value

    def test_pending_review_task_is_only_annotated(self, db, materializer, now):
        """A task someone is reviewing keeps its status when the data is corrected."""
        created = create(materializer, now, make_finding())
        with db.session() as session:
            TaskRepository(session).transition(created.created[0].task_id, "pending_review")

        result = self._resolve(db, materializer, now)

        assert result.resolved_signals == [created.created[0].detection_id]
        with db.session() as session:
            task = session.query(Task).one()
            assert task.status == TaskStatus.PENDING_REVIEW.value
            assert task.completed_at is None
            assert PENDING_REVIEW_NOTE in task.notes
            assert session.query(Signal).one().status == SignalStatus.RESOLVED.value

    def test_record_removed_note(self, db, materializer, now):
        create(materializer, now, make_finding())
        result = self._resolve(db, materializer, now, deleted=True)
        assert len(result.resolved) == 1
        with db.session() as session:
            assert RECORD_REMOVED_NOTE in session.query(Task).one().notes

    def test_already_resolved_signal_is_skipped(self, db, materializer, now):
        create(materializer, now, make_finding())
        with db.session() as session:
            signals = session.query(Signal).all()
        plan = IssueReconciler().reconcile([], signals)
        materializer.apply(plan, now=now)
        again = materializer.apply(plan, now=now)
        assert again.resolved_signals == []
        assert plan.resolves[0].reason == ResolveReason.DATA_CORRECTED


class TestRepair:
    def test_signal_without_task_gets_one(self, db, materializer, now):
        with db.session() as session:
            session.add(Signal(
                trial_id=TRIAL, domain="LB", source="Central Lab", record_id="REC-9",
                discrepancy_type="out_of_range", title="orphan", signal_type="LAB Testing Risk",
                observation="left behind", priority="Medium", status="open",
            ))

        plan = IssueReconciler().reconcile([], [], evaluated_record_ids=set())
        result = materializer.apply(plan, now=now, batch_key=(TRIAL, "LB", "Central Lab"))

        assert len(result.repaired) == 1
        assert result.repaired[0].due_date == now + timedelta(days=7)
        with db.session() as session:
            assert session.query(Task).one().record_id == "REC-9"
