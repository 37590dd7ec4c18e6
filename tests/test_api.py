"""Tests for the FastAPI surface."""

import inspect

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from app.config import Settings, settings
from app.main import app
from app.services.workflow import WorkflowService, set_workflow_service
from trialguard.database.config import DatabaseConfig
from trialguard.workflow.runner import DataQualityWorkflow

from conftest import LAB, TRIAL, lab_record


@pytest.fixture
def client(db, config, email_sink, clock, users, monkeypatch):
    monkeypatch.setattr(settings, "ANALYZE_IN_BACKGROUND", False)
    workflow = DataQualityWorkflow(db=db, config=config, email_sink=email_sink, clock=clock)
    set_workflow_service(WorkflowService(workflow))
    try:
        yield TestClient(app)
    finally:
        set_workflow_service(None)
        workflow.shutdown()


def post_record(client, record, record_id="LB-001", **extra):
    body = {"trial_id": TRIAL, "domain": "LB", "source": LAB, "record_id": record_id, "record_data": record}
    body.update(extra)
    return client.post("/api/v1/domain-data/records", json=body)


class TestRouteHandlers:
    def test_blocking_handlers_run_in_the_threadpool(self):
        """Workflow calls wait on batch locks, so no API handler may run on the event loop."""
        handlers = [route for route in app.routes
                    if isinstance(route, APIRoute) and route.path.startswith("/api/v1")]

        assert handlers
        assert [r.path for r in handlers if inspect.iscoroutinefunction(r.endpoint)] == []


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_health(self, client):
        body = client.get("/api/v1/health").json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"


class TestDomainData:
    def test_ingest_runs_analysis(self, client):
        response = post_record(client, lab_record())

        assert response.status_code == 200
        body = response.json()
        assert body["version"] == 1
        assert body["analysis_queued"] is False
        assert body["analysis"]["records_evaluated"] == 1
        assert body["analysis"]["materialization"]["created"][0]["assigned_to"] == "Data Manager"

    def test_ingest_without_analysis(self, client):
        body = post_record(client, lab_record(), analyze=False).json()
        assert body["analysis"] is None
        assert client.get("/api/v1/signals").json()["total"] == 0

    def test_update_increments_version_and_resolves(self, client):
        post_record(client, lab_record())
        body = post_record(client, lab_record(value="15.0")).json()

        assert body["version"] == 2
        assert len(body["analysis"]["materialization"]["resolved_signals"]) == 1
        tasks = client.get("/api/v1/tasks", params={"trial_id": TRIAL}).json()["tasks"]
        assert tasks[0]["status"] == "completed"

    def test_analyze_endpoint(self, client):
        post_record(client, lab_record(), analyze=False)
        response = client.post("/api/v1/domain-data/analyze",
                               json={"trial_id": TRIAL, "domain": "LB", "source": LAB})
        assert response.status_code == 200
        assert response.json()["plan"]["creates"] == 1

    def test_delete_record(self, client):
        post_record(client, lab_record())
        response = client.delete(f"/api/v1/domain-data/records/{TRIAL}/LB/{LAB}/LB-001")

        assert response.status_code == 200
        assert response.json()["analysis"]["plan"]["resolves"] == 1
        signals = client.get("/api/v1/signals", params={"status": "resolved"}).json()
        assert signals["total"] == 1

    def test_delete_missing_record(self, client):
        response = client.delete(f"/api/v1/domain-data/records/{TRIAL}/LB/{LAB}/NOPE")
        assert response.status_code == 404

    def test_invalid_request(self, client):
        response = client.post("/api/v1/domain-data/analyze", json={"trial_id": "", "domain": "LB"})
        assert response.status_code == 422


class TestSignalsAndTasks:
    def test_signal_board(self, client):
        post_record(client, lab_record())
        signals = client.get("/api/v1/signals", params={"domain": "lb", "priority": "High"}).json()

        assert signals["total"] == 1
        signal = signals["signals"][0]
        assert signal["discrepancy_type"] == "out_of_range"
        assert signal["task_id"].startswith("DQ_TASK_")

        detail = client.get(f"/api/v1/signals/{signal['detection_id']}")
        assert detail.json()["record_id"] == "LB-001"
        assert client.get("/api/v1/signals/DQ_UNKNOWN").status_code == 404

    def test_summary(self, client):
        post_record(client, lab_record())
        post_record(client, lab_record(), record_id="LB-002")
        post_record(client, lab_record(value="15.0"), record_id="LB-002")

        summary = client.get("/api/v1/signals/summary", params={"trial_id": TRIAL}).json()
        assert summary["total"] == 2
        assert summary["open"] == 1
        assert summary["by_status"] == {"open": 1, "resolved": 1}
        assert summary["by_priority"] == {"High": 1}
        assert summary["tasks_by_status"] == {"completed": 1, "not_started": 1}

    def test_task_status_transition(self, client):
        post_record(client, lab_record())
        task = client.get("/api/v1/tasks").json()["tasks"][0]

        response = client.patch(f"/api/v1/tasks/{task['task_id']}/status",
                                json={"status": "in_progress", "note": "checking", "actor": "dm1"})
        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"
        assert "dm1: checking" in response.json()["notes"]

        signal = client.get(f"/api/v1/signals/{task['detection_id']}").json()
        assert signal["status"] == "in_progress"

    def test_closed_task_cannot_be_reopened(self, client):
        post_record(client, lab_record())
        task = client.get("/api/v1/tasks").json()["tasks"][0]
        done = client.patch(f"/api/v1/tasks/{task['task_id']}/status", json={"status": "completed"})
        assert done.json()["status"] == "completed"

        reopened = client.patch(f"/api/v1/tasks/{task['task_id']}/status", json={"status": "in_progress"})

        assert reopened.status_code == 409
        assert client.get(f"/api/v1/tasks/{task['task_id']}").json()["status"] == "completed"
        assert client.get(f"/api/v1/signals/{task['detection_id']}").json()["status"] == "closed"

    def test_task_status_validation(self, client):
        assert client.patch("/api/v1/tasks/DQ_TASK_NONE/status", json={"status": "completed"}).status_code == 404
        post_record(client, lab_record())
        task = client.get("/api/v1/tasks").json()["tasks"][0]
        bad = client.patch(f"/api/v1/tasks/{task['task_id']}/status", json={"status": "archived"})
        assert bad.status_code == 422

    def test_task_filters(self, client):
        post_record(client, lab_record())
        assert client.get("/api/v1/tasks", params={"assigned_to": "Data Manager"}).json()["total"] == 1
        assert client.get("/api/v1/tasks", params={"status": "completed"}).json()["total"] == 0
        assert client.get("/api/v1/tasks/DQ_TASK_NONE").status_code == 404


class TestNotificationRoutes:
    def test_feed_and_read(self, client):
        post_record(client, lab_record())

        feed = client.get("/api/v1/notifications", params={"user_id": "dm1"}).json()
        assert feed["total"] == 1
        assert feed["unread"] == 1
        notification_id = feed["notifications"][0]["id"]

        marked = client.post("/api/v1/notifications/read",
                             json={"user_id": "dm1", "notification_id": notification_id})
        assert marked.json() == {"marked": 1}
        assert client.get("/api/v1/notifications/unread-count", params={"user_id": "dm1"}).json()["unread"] == 0
        assert client.get("/api/v1/notifications/unread-count", params={"user_id": "dm2"}).json()["unread"] == 1

    def test_mark_all(self, client):
        post_record(client, lab_record())
        post_record(client, lab_record(), record_id="LB-002")
        marked = client.post("/api/v1/notifications/read", json={"user_id": "dm2", "all": True})
        assert marked.json() == {"marked": 2}

    def test_mark_read_errors(self, client):
        assert client.post("/api/v1/notifications/read", json={"user_id": "dm1"}).status_code == 400
        missing = client.post("/api/v1/notifications/read", json={"user_id": "dm1", "notification_id": 4242})
        assert missing.status_code == 404

    def test_stats(self, client):
        post_record(client, lab_record())
        stats = client.get("/api/v1/notifications/stats", params={"user_id": "dm1"}).json()
        assert stats["unread"] == 1
        assert stats["action_required_unread"] == 1


class TestSettings:
    def test_database_is_configured_only_through_database_config(self):
        assert not {"DATABASE_URL", "DB_HOST", "DB_PORT", "DB_NAME"} & set(Settings.model_fields)
        assert DatabaseConfig(url="sqlite://").connection_url == "sqlite://"
