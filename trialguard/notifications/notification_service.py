"""
TRIALGUARD - Notification Service
==================================
Database-backed in-app notifications.

Features:
- Role- and user-targeted notifications
- Per-recipient read/unread tracking for role-targeted notifications
- User preferences (in-app toggle, critical-only filter)
- Trial access filtering
- Unread counts and per-user statistics
"""

import json
import logging
from datetime import datetime
from typing import List, Dict, Optional, Any, Iterable, Set

import pandas as pd
from sqlalchemy import String, cast, func, or_
from sqlalchemy.orm import Session

from trialguard.database.connection import DatabaseManager, get_db_manager
from trialguard.database.enums import NotificationType, NotificationPriority
from trialguard.database.models import Notification, NotificationReadStatus, User, utcnow

logger = logging.getLogger(__name__)


class NotificationService:
    """Notification storage and per-recipient read state."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self._db = db

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            self._db = get_db_manager()
        return self._db

    # ------------------------------------------------------------------ write

    def send_notification(
        self,
        session: Session,
        title: str,
        description: str,
        target_roles: Optional[Iterable[str]] = None,
        target_users: Optional[Iterable[str]] = None,
        notification_type: NotificationType = NotificationType.TASK,
        priority: str = NotificationPriority.MEDIUM.value,
        trial_id: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        action_required: bool = False,
        action_url: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[Notification]:
        """
        Store a notification in the caller's session.

        Returns:
            The new notification, or None when one with the same dedupe key exists

        Raises:
            ValueError: neither roles nor users were targeted
        """
        roles = list(dict.fromkeys(target_roles or []))
        users = list(dict.fromkeys(target_users or []))
        if not roles and not users:
            raise ValueError("A notification needs at least one target role or user")

        if dedupe_key and session.query(Notification.id).filter(
            Notification.dedupe_key == dedupe_key
        ).first():
            logger.debug(f"Notification {dedupe_key} already sent")
            return None

        notification = Notification(
            title=title,
            description=description,
            type=notification_type.value,
            priority=priority,
            trial_id=trial_id,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            target_roles=roles,
            target_users=users,
            action_required=action_required,
            action_url=action_url,
            dedupe_key=dedupe_key,
            created_at=created_at or utcnow(),
        )
        session.add(notification)
        session.flush()
        logger.info(f"Notification {notification.id} queued for roles={roles} users={users}")
        return notification

    # ------------------------------------------------------------------ read

    def _visible(self, session: Session, user: Optional[User], user_id: str,
                 limit: Optional[int] = None) -> List[Notification]:
        """Notifications addressed to the user directly or through their role."""
        preference = user.preference if user else None
        if preference is not None and not preference.in_app_enabled:
            return []

        # Coarse SQL pre-filter; the exact target, access and preference checks follow below
        addressed = [cast(Notification.target_users, String).contains(json.dumps(user_id), autoescape=True)]
        if user is not None and user.role:
            addressed.append(cast(Notification.target_roles, String).contains(json.dumps(user.role), autoescape=True))
        query = session.query(Notification).filter(or_(*addressed))

        if user is not None and user.study_access and 'All Studies' not in user.study_access:
            query = query.filter(or_(
                Notification.trial_id.is_(None),
                Notification.trial_id == '',
                Notification.trial_id.in_(list(user.study_access)),
            ))
        if preference is not None and preference.critical_only:
            query = query.filter(func.lower(Notification.priority).in_(('critical', 'high')))

        visible = []
        for notification in query.order_by(Notification.created_at.desc(), Notification.id.desc()):
            direct = user_id in (notification.target_users or [])
            by_role = user is not None and user.role in (notification.target_roles or [])
            if not (direct or by_role):
                continue
            if user is not None and not user.has_trial_access(notification.trial_id):
                continue
            if preference is not None and not preference.allows(notification.priority):
                continue
            visible.append(notification)
            if limit and len(visible) >= limit:
                break
        return visible

    def _read_ids(self, session: Session, user_id: str) -> Set[int]:
        rows = session.query(NotificationReadStatus.notification_id).filter(
            NotificationReadStatus.user_id == user_id
        ).all()
        return {r[0] for r in rows}

    @staticmethod
    def _is_read(notification: Notification, user_id: str, read_ids: Set[int]) -> bool:
        if notification.id in read_ids:
            return True
        # Single-recipient notifications also carry the flag on the row
        return bool(notification.read) and notification.target_users == [user_id] and not notification.target_roles

    def get_user_notifications(
        self,
        user_id: str,
        limit: int = 50,
        include_read: bool = True,
    ) -> List[Dict[str, Any]]:
        """Get notifications for a user with their own read state."""
        with self.db.session() as session:
            user = session.get(User, user_id)
            read_ids = self._read_ids(session, user_id)
            results = []
            for notification in self._visible(session, user, user_id):
                is_read = self._is_read(notification, user_id, read_ids)
                if is_read and not include_read:
                    continue
                item = notification.to_dict()
                item['read'] = is_read
                results.append(item)
                if len(results) >= limit:
                    break
            return results

    def get_unread_count(self, user_id: str) -> int:
        """Get count of unread notifications for a user."""
        with self.db.session() as session:
            user = session.get(User, user_id)
            read_ids = self._read_ids(session, user_id)
            return sum(
                1 for n in self._visible(session, user, user_id)
                if not self._is_read(n, user_id, read_ids)
            )

    def mark_as_read(self, notification_id: int, user_id: str) -> bool:
        """Mark one notification as read for one recipient."""
        with self.db.session() as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                return False
            self._mark(session, notification, user_id, utcnow())
            return True

    def mark_all_as_read(self, user_id: str) -> int:
        """Mark every visible notification as read for a user."""
        with self.db.session() as session:
            user = session.get(User, user_id)
            read_ids = self._read_ids(session, user_id)
            now = utcnow()
            count = 0
            for notification in self._visible(session, user, user_id):
                if self._is_read(notification, user_id, read_ids):
                    continue
                self._mark(session, notification, user_id, now)
                count += 1
            return count

    def _mark(self, session: Session, notification: Notification, user_id: str, now: datetime) -> None:
        exists = session.query(NotificationReadStatus.id).filter(
            NotificationReadStatus.notification_id == notification.id,
            NotificationReadStatus.user_id == user_id,
        ).first()
        if not exists:
            session.add(NotificationReadStatus(notification_id=notification.id, user_id=user_id, read_at=now))
        if notification.target_users == [user_id] and not notification.target_roles:
            notification.read = True
            notification.read_at = now
        session.flush()

    def get_notification_stats(self, user_id: str) -> Dict[str, Any]:
        """Get notification statistics for a user."""
        with self.db.session() as session:
            user = session.get(User, user_id)
            read_ids = self._read_ids(session, user_id)
            rows = [
                {
                    'priority': n.priority,
                    'type': n.type,
                    'action_required': bool(n.action_required),
                    'read': self._is_read(n, user_id, read_ids),
                }
                for n in self._visible(session, user, user_id)
            ]

        if not rows:
            return {'total': 0, 'unread': 0, 'action_required_unread': 0, 'unread_by_priority': {}}

        df = pd.DataFrame(rows)
        unread = df[~df['read']]
        return {
            'total': int(len(df)),
            'unread': int(len(unread)),
            'action_required_unread': int(unread['action_required'].sum()),
            'unread_by_priority': {k: int(v) for k, v in unread['priority'].value_counts().items()},
        }


# ============================================================
# SINGLETON ACCESSORS
# ============================================================

_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get singleton notification service."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service


def reset_notification_service() -> None:
    """Reset the singleton (for testing)."""
    global _notification_service
    _notification_service = None
