"""
TRIALGUARD - Notifications Module
==================================
In-app notifications, task email hand-off and workflow fan-out.
"""

from .notification_service import (
    NotificationService,
    get_notification_service,
    reset_notification_service,
)
from .email_sink import (
    EmailPayload,
    EmailTransport,
    LoggingEmailTransport,
    EmailSink,
    QueuedEmailSink,
)
from .dispatcher import NotificationDispatcher

__all__ = [
    'NotificationService',
    'get_notification_service',
    'reset_notification_service',
    'EmailPayload',
    'EmailTransport',
    'LoggingEmailTransport',
    'EmailSink',
    'QueuedEmailSink',
    'NotificationDispatcher',
]
