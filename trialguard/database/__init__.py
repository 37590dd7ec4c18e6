"""
TRIALGUARD - Database Package
==============================
Persistence for ingested records, signals, tasks and notifications.
"""

from .models import (
    Base, DomainRecord, Signal, Task, Notification, NotificationReadStatus,
    User, NotificationPreference,
)
from .connection import DatabaseManager, get_db_manager, set_db_manager, reset_db_manager
from .config import DatabaseConfig

__all__ = [
    'Base',
    'DomainRecord',
    'Signal',
    'Task',
    'Notification',
    'NotificationReadStatus',
    'User',
    'NotificationPreference',
    'DatabaseManager',
    'DatabaseConfig',
    'get_db_manager',
    'set_db_manager',
    'reset_db_manager',
]
