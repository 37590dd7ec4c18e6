"""
TRIALGUARD - Notification Dispatcher
=====================================
Fans out in-app notifications and task emails for workflow changes.

Runs after the materializer has committed. Failures here are logged and
never propagate: notification delivery does not roll back task state.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from trialguard.config import WorkflowConfig, DEFAULT_WORKFLOW_CONFIG
from trialguard.database.connection import DatabaseManager, get_db_manager
from trialguard.database.enums import NotificationKind, NotificationType
from trialguard.database.models import User
from trialguard.database.repositories import UserRepository
from trialguard.workflow.materializer import MaterializationResult, TaskEvent
from .email_sink import EmailPayload, EmailSink
from .notification_service import NotificationService

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Creates one notification per (task event, audience role) and hands a
    task email to the email sink.

    Audience: the task's assigned role plus the configured also-notify roles
    for the domain and severity.
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        config: Optional[WorkflowConfig] = None,
        notification_service: Optional[NotificationService] = None,
        email_sink: Optional[EmailSink] = None,
    ):
        self._db = db
        self.config = config or DEFAULT_WORKFLOW_CONFIG
        self.notification_service = notification_service or NotificationService(db)
        self.email_sink = email_sink

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            self._db = get_db_manager()
        return self._db

    def dispatch(self, result: MaterializationResult) -> List[Dict[str, Any]]:
        """
        Notify the audience of every created, repaired and auto-resolved task.

        Returns:
            The notifications that were created (as dicts)
        """
        events = list(result.created) + list(result.repaired) + list(result.resolved)
        sent: List[Dict[str, Any]] = []

        for event in events:
            try:
                with self.db.session() as session:
                    created = self._notify(session, event)
                    sent.extend(n.to_dict() for n in created)
                    recipients = self._email_recipients(session, event) if created else []
            except Exception as e:
                logger.error(f"Notification dispatch failed for task {event.task_id}: {e}")
                continue

            if recipients:
                self._hand_off_email(event, recipients)

        if events:
            logger.info(f"Dispatched {len(sent)} notifications for {len(events)} task events")
        return sent

    def audience(self, event: TaskEvent) -> List[str]:
        return self.config.audience_for(
            event.domain, event.discrepancy_type, event.priority, assigned_role=event.assigned_to
        )

    def _notify(self, session: Session, event: TaskEvent) -> list:
        created = []
        action_required = event.kind == NotificationKind.CREATED
        if action_required:
            title = f"{event.task_id}: {event.title}"
            description = (
                f"{event.description}\n"
                f"Assigned to {event.assigned_to}, due {event.due_date:%Y-%m-%d}."
            )
        else:
            title = f"{event.task_id} resolved: {event.title}"
            description = (
                f"The underlying {event.domain} data for record {event.record_id} was corrected. "
                f"Task status is now {event.status}."
            )

        for role in self.audience(event):
            notification = self.notification_service.send_notification(
                session,
                title=title,
                description=description,
                target_roles=[role],
                notification_type=NotificationType.TASK,
                priority=event.priority.lower(),
                trial_id=event.trial_id,
                related_entity_type="task",
                related_entity_id=event.task_id,
                action_required=action_required,
                action_url=f"/tasks/{event.task_id}",
                dedupe_key=f"{event.task_id}:{event.kind.value}:{role}",
            )
            if notification is not None:
                created.append(notification)
        return created

    def _email_recipients(self, session: Session, event: TaskEvent) -> List[str]:
        if self.email_sink is None or not self.config.email_enabled:
            return []
        users = UserRepository(session).get_by_roles(self.audience(event), trial_id=event.trial_id)
        return [u.email for u in users if u.email and self._wants_email(u, event.priority)]

    @staticmethod
    def _wants_email(user: User, priority: str) -> bool:
        if user.preference is None:
            return True
        return user.preference.allows(priority, channel='email')

    def _hand_off_email(self, event: TaskEvent, recipients: List[str]) -> None:
        payload = EmailPayload(
            task_id=event.task_id,
            task_title=event.title,
            description=event.description,
            due_date=event.due_date,
            priority=event.priority,
            assigned_role=event.assigned_to,
            trial_id=event.trial_id,
            domain=event.domain,
            record_id=event.record_id,
            source=event.source,
            recipients=recipients,
            kind=event.kind.value,
            data_context=event.data_context,
        )
        try:
            self.email_sink.submit(payload)
        except Exception as e:
            logger.error(f"Email hand-off failed for task {event.task_id}: {e}")
