"""
TRIALGUARD - Workflow Configuration
====================================
Assignment, due-date and delivery settings for the data quality workflow.

All values come from environment variables (optionally loaded from a .env
file at the repository root) and fall back to the defaults below.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from dotenv import load_dotenv

# Load environment variables
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


def _default_role_by_domain() -> Dict[str, str]:
    return {
        'LB': 'Data Manager',
        'VS': 'Data Manager',
        'DM': 'Data Manager',
        'SV': 'Clinical Research Associate',
        'PD': 'Clinical Research Associate',
        'AE': 'Medical Monitor',
        'SAE': 'Medical Monitor',
    }


def _default_role_by_type() -> Dict[str, str]:
    # Overrides the domain mapping for specific discrepancy types
    return {
        'stale_data': 'Clinical Research Associate',
    }


def _default_also_notify_by_domain() -> Dict[str, List[str]]:
    return {
        'AE': ['Principal Investigator'],
        'SAE': ['Principal Investigator'],
    }


def _default_also_notify_by_severity() -> Dict[str, List[str]]:
    return {
        'Critical': ['Principal Investigator'],
    }


@dataclass
class WorkflowConfig:
    """Data quality workflow settings."""

    # Due date offsets (days) per severity
    due_days_critical: int = int(os.getenv('TG_DUE_DAYS_CRITICAL', '1'))
    due_days_high: int = int(os.getenv('TG_DUE_DAYS_HIGH', '3'))
    due_days_medium: int = int(os.getenv('TG_DUE_DAYS_MEDIUM', '7'))
    due_days_low: int = int(os.getenv('TG_DUE_DAYS_LOW', '14'))

    # Assignment
    default_role: str = os.getenv('TG_DEFAULT_ROLE', 'Data Manager')
    role_by_domain: Dict[str, str] = field(default_factory=_default_role_by_domain)
    role_by_type: Dict[str, str] = field(default_factory=_default_role_by_type)
    also_notify_by_domain: Dict[str, List[str]] = field(default_factory=_default_also_notify_by_domain)
    also_notify_by_severity: Dict[str, List[str]] = field(default_factory=_default_also_notify_by_severity)

    # Rules
    stale_after_days: int = int(os.getenv('TG_STALE_AFTER_DAYS', '30'))

    # Email hand-off
    email_enabled: bool = os.getenv('TG_EMAIL_ENABLED', 'true').lower() == 'true'
    email_queue_size: int = int(os.getenv('TG_EMAIL_QUEUE_SIZE', '500'))
    email_timeout_seconds: float = float(os.getenv('TG_EMAIL_TIMEOUT', '10'))
    email_max_retries: int = int(os.getenv('TG_EMAIL_MAX_RETRIES', '3'))
    email_retry_backoff: float = float(os.getenv('TG_EMAIL_RETRY_BACKOFF', '0.5'))

    # Trigger executor
    max_workers: int = int(os.getenv('TG_MAX_WORKERS', '4'))

    def due_days(self, severity: str) -> int:
        """Number of days until a task of the given severity is due."""
        return {
            'Critical': self.due_days_critical,
            'High': self.due_days_high,
            'Medium': self.due_days_medium,
            'Low': self.due_days_low,
        }.get(severity, self.due_days_medium)

    def role_for(self, domain: str, discrepancy_type: str) -> str:
        """Role that owns tasks raised for this domain/discrepancy type."""
        if discrepancy_type in self.role_by_type:
            return self.role_by_type[discrepancy_type]
        return self.role_by_domain.get(domain.upper(), self.default_role)

    def audience_for(self, domain: str, discrepancy_type: str, severity: str,
                     assigned_role: Optional[str] = None) -> List[str]:
        """Ordered, de-duplicated roles to notify about a task."""
        roles = [assigned_role or self.role_for(domain, discrepancy_type)]
        roles.extend(self.also_notify_by_domain.get(domain.upper(), []))
        roles.extend(self.also_notify_by_severity.get(severity, []))
        seen = set()
        return [r for r in roles if not (r in seen or seen.add(r))]


# Default configuration instance
DEFAULT_WORKFLOW_CONFIG = WorkflowConfig()
