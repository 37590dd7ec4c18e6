"""Tests for in-app notifications and the workflow dispatcher."""

from datetime import timedelta

import pytest

from trialguard.database.enums import NotificationKind
from trialguard.database.models import Notification, User
from trialguard.database.repositories import UserRepository
from trialguard.notifications.dispatcher import NotificationDispatcher
from trialguard.notifications.notification_service import NotificationService
from trialguard.workflow.materializer import MaterializationResult, TaskEvent

from conftest import LAB, TRIAL


@pytest.fixture
def service(db):
    return NotificationService(db)


def send(db, service, roles=None, users=None, priority="medium", trial_id=TRIAL, dedupe_key=None, **kwargs):
    with db.session() as session:
        return service.send_notification(
            session,
            title=kwargs.pop("title", "Task created"),
            description="Out of range LBORRES",
            target_roles=roles,
            target_users=users,
            priority=priority,
            trial_id=trial_id,
            dedupe_key=dedupe_key,
            **kwargs,
        )


def make_event(kind=NotificationKind.CREATED, priority="High", domain="LB", now=None):
    return TaskEvent(
        kind=kind,
        task_id="DQ_TASK_TEST",
        detection_id="DQ_TEST",
        title="Out of range LBORRES in LB record",
        description="LBORRES value 25.5 is outside the reference range [13, 17]",
        priority=priority,
        status="not_started",
        assigned_to="Data Manager",
        due_date=now,
        trial_id=TRIAL,
        domain=domain,
        source=LAB,
        record_id="LB-001",
        discrepancy_type="out_of_range",
    )


class TestSendNotification:
    def test_requires_a_target(self, db, service):
        with pytest.raises(ValueError):
            send(db, service)

    def test_dedupe_key_suppresses_repeats(self, db, service):
        first = send(db, service, roles=["Data Manager"], dedupe_key="T1:created:Data Manager")
        second = send(db, service, roles=["Data Manager"], dedupe_key="T1:created:Data Manager")
        assert first is not None
        assert second is None
        with db.session() as session:
            assert session.query(Notification).count() == 1


class TestReadState:
    def test_role_notification_read_state_is_per_user(self, db, service, users):
        notification = send(db, service, roles=["Data Manager"])

        assert service.get_unread_count("dm1") == 1
        assert service.get_unread_count("dm2") == 1

        assert service.mark_as_read(notification.id, "dm1") is True
        assert service.get_unread_count("dm1") == 0
        assert service.get_unread_count("dm2") == 1

        feed = service.get_user_notifications("dm1")
        assert [n["read"] for n in feed] == [True]
        assert service.get_user_notifications("dm1", include_read=False) == []

    def test_mark_as_read_is_idempotent(self, db, service, users):
        notification = send(db, service, roles=["Data Manager"])
        assert service.mark_as_read(notification.id, "dm1")
        assert service.mark_as_read(notification.id, "dm1")
        assert service.get_unread_count("dm1") == 0

    def test_mark_unknown_notification(self, service, users):
        assert service.mark_as_read(99999, "dm1") is False

    def test_direct_notification_sets_row_flag(self, db, service, users):
        notification = send(db, service, users=["cra1"])
        service.mark_as_read(notification.id, "cra1")
        with db.session() as session:
            assert session.get(Notification, notification.id).read is True

    def test_mark_all_as_read(self, db, service, users):
        send(db, service, roles=["Data Manager"], title="one")
        send(db, service, users=["dm1"], title="two")
        send(db, service, roles=["Medical Monitor"], title="not mine")

        assert service.mark_all_as_read("dm1") == 2
        assert service.get_unread_count("dm1") == 0
        assert service.get_unread_count("dm2") == 1


class TestVisibility:
    def test_trial_access_filters_feed(self, db, service, users):
        send(db, service, roles=["Medical Monitor"])
        assert service.get_unread_count("mm1") == 1
        assert service.get_unread_count("mm2") == 0

    def test_critical_only_preference(self, db, service, users):
        send(db, service, roles=["Principal Investigator"], priority="medium", title="routine")
        send(db, service, roles=["Principal Investigator"], priority="critical", title="urgent")
        feed = service.get_user_notifications("pi1")
        assert [n["title"] for n in feed] == ["urgent"]

    def test_newest_first_and_limit(self, db, service, users, now):
        send(db, service, roles=["Data Manager"], title="older", created_at=now)
        send(db, service, roles=["Data Manager"], title="newer", created_at=now + timedelta(minutes=5))
        assert [n["title"] for n in service.get_user_notifications("dm1")] == ["newer", "older"]
        assert len(service.get_user_notifications("dm1", limit=1)) == 1

    def test_stats(self, db, service, users):
        first = send(db, service, roles=["Data Manager"], priority="high", action_required=True)
        send(db, service, roles=["Data Manager"], priority="low")
        service.mark_as_read(first.id, "dm1")

        stats = service.get_notification_stats("dm1")
        assert stats == {
            "total": 2,
            "unread": 1,
            "action_required_unread": 0,
            "unread_by_priority": {"low": 1},
        }

    def test_role_match_is_exact(self, db, service, users):
        with db.session() as session:
            UserRepository(session).create(User(user_id="lead_1", username="lee", email="lee@example.org",
                                                role="Data Manager Lead"))
            UserRepository(session).create(User(user_id="méd1", username="mé", email="me@example.org",
                                                role="Médecin"))
        send(db, service, roles=["Data Manager Lead"], title="leads")
        send(db, service, roles=["Médecin"], title="médecins")
        send(db, service, users=["lead%1"], title="someone else")

        assert [n["title"] for n in service.get_user_notifications("lead_1")] == ["leads"]
        assert [n["title"] for n in service.get_user_notifications("méd1")] == ["médecins"]
        assert service.get_unread_count("dm1") == 0

    def test_feed_only_reads_accessible_trials(self, db, service, users):
        send(db, service, roles=["Medical Monitor"], trial_id="TRIAL-999", title="other trial")
        send(db, service, roles=["Medical Monitor"], trial_id=None, title="programme wide")
        send(db, service, roles=["Medical Monitor"], title="this trial")

        titles = sorted(n["title"] for n in service.get_user_notifications("mm1"))
        assert titles == ["programme wide", "this trial"]

    def test_stats_without_notifications(self, service, users):
        assert service.get_notification_stats("dm1")["total"] == 0


class TestDispatcher:
    def test_one_notification_per_role(self, db, config, email_sink, users, now):
        dispatcher = NotificationDispatcher(db, config, email_sink=email_sink)
        result = MaterializationResult(created=[make_event(priority="Critical", domain="AE", now=now)])

        sent = dispatcher.dispatch(result)

        assert sorted(n["target_roles"][0] for n in sent) == ["Data Manager", "Principal Investigator"]
        assert all(n["action_required"] for n in sent)
        assert all(n["priority"] == "critical" for n in sent)
        assert sent[0]["action_url"] == "/tasks/DQ_TASK_TEST"
        assert len(email_sink.payloads) == 1
        assert email_sink.payloads[0].subject.startswith("[Critical] New task")

    def test_repeated_dispatch_sends_nothing_new(self, db, config, email_sink, users, now):
        dispatcher = NotificationDispatcher(db, config, email_sink=email_sink)
        result = MaterializationResult(created=[make_event(now=now)])
        assert len(dispatcher.dispatch(result)) == 1
        assert dispatcher.dispatch(result) == []
        assert len(email_sink.payloads) == 1

    def test_resolution_notice_is_informational(self, db, config, users, now):
        dispatcher = NotificationDispatcher(db, config)
        result = MaterializationResult(resolved=[make_event(kind=NotificationKind.AUTO_RESOLVED, now=now)])
        sent = dispatcher.dispatch(result)
        assert len(sent) == 1
        assert sent[0]["action_required"] is False
        assert sent[0]["title"].startswith("DQ_TASK_TEST resolved")

    def test_failing_sink_does_not_break_dispatch(self, db, config, users, now):
        class BrokenSink:
            def submit(self, payload):
                raise RuntimeError("relay down")

        dispatcher = NotificationDispatcher(db, config, email_sink=BrokenSink())
        sent = dispatcher.dispatch(MaterializationResult(created=[make_event(now=now)]))
        assert len(sent) == 1
