"""
TRIALGUARD - Workflow Package
==============================
Issue reconciliation, task/signal materialization and batch locking.

The orchestrating DataQualityWorkflow lives in trialguard.workflow.runner.
"""

from .reconciler import (
    IssueKey,
    ActionType,
    ResolveReason,
    PlannedAction,
    ReconciliationPlan,
    IssueReconciler,
)
from .materializer import TaskEvent, MaterializationResult, TaskSignalMaterializer
from .locks import BatchLockRegistry

__all__ = [
    'IssueKey',
    'ActionType',
    'ResolveReason',
    'PlannedAction',
    'ReconciliationPlan',
    'IssueReconciler',
    'TaskEvent',
    'MaterializationResult',
    'TaskSignalMaterializer',
    'BatchLockRegistry',
]
