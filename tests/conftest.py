# tests/conftest.py
from datetime import datetime

import pytest

from trialguard.config import WorkflowConfig
from trialguard.database.config import DatabaseConfig
from trialguard.database.connection import DatabaseManager, set_db_manager, reset_db_manager
from trialguard.database.models import User, NotificationPreference
from trialguard.database.repositories import UserRepository
from trialguard.notifications.email_sink import EmailSink
from trialguard.notifications.notification_service import reset_notification_service
from trialguard.workflow.runner import DataQualityWorkflow, reset_workflow

NOW = datetime(2026, 3, 2, 9, 0, 0)

TRIAL = "TRIAL-001"
LAB = "Central Lab"


class RecordingEmailSink(EmailSink):
    """Keeps handed-off payloads in memory instead of sending them."""

    def __init__(self):
        self.payloads = []

    def submit(self, payload) -> bool:
        self.payloads.append(payload)
        return True


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def db():
    """Fresh in-memory database per test, installed as the singleton."""
    manager = DatabaseManager(DatabaseConfig(url="sqlite://"))
    manager.create_tables()
    set_db_manager(manager)
    try:
        yield manager
    finally:
        reset_workflow()
        reset_notification_service()
        reset_db_manager()


@pytest.fixture
def config():
    return WorkflowConfig(email_enabled=True, stale_after_days=30)


@pytest.fixture
def email_sink():
    return RecordingEmailSink()


@pytest.fixture
def workflow(db, config, email_sink, clock):
    wf = DataQualityWorkflow(db=db, config=config, email_sink=email_sink, clock=clock)
    try:
        yield wf
    finally:
        wf.shutdown()


@pytest.fixture
def users(db):
    """A small recipient directory covering every workflow role."""
    with db.session() as session:
        repo = UserRepository(session)
        repo.create(User(user_id="dm1", username="dana", email="dana@example.org",
                         role="Data Manager", study_access=["All Studies"]))
        repo.create(User(user_id="dm2", username="dev", email="dev@example.org",
                         role="Data Manager", study_access=[TRIAL]))
        repo.create(User(user_id="mm1", username="morgan", email="morgan@example.org",
                         role="Medical Monitor", study_access=[TRIAL]))
        repo.create(User(user_id="mm2", username="mika", email="mika@example.org",
                         role="Medical Monitor", study_access=["TRIAL-999"]))
        repo.create(User(user_id="pi1", username="pat", email="pat@example.org",
                         role="Principal Investigator"),
                    NotificationPreference(critical_only=True))
        repo.create(User(user_id="cra1", username="casey", email="casey@example.org",
                         role="Clinical Research Associate"),
                    NotificationPreference(email_enabled=False))
    return ["dm1", "dm2", "mm1", "mm2", "pi1", "cra1"]


def lab_record(value="25.5", low="13.0", high="17.0", **extra):
    record = {"LBORRES": value, "LBSTNRLO": low, "LBSTNRHI": high}
    record.update(extra)
    return record
