"""
TRIALGUARD - Exceptions
========================
Error types raised by the data quality workflow.
"""


class TrialGuardError(Exception):
    """Base class for all workflow errors."""
    pass


class RuleEvaluationError(TrialGuardError):
    """A validation rule could not read or parse the record it inspects."""

    def __init__(self, rule_id: str, message: str):
        self.rule_id = rule_id
        super().__init__(f"{rule_id}: {message}")


class MaterializationError(TrialGuardError):
    """Applying a reconciliation plan to the database failed."""
    pass


class WorkflowError(TrialGuardError):
    """A data quality run failed and its batch was rolled back."""

    def __init__(self, batch_key, message: str):
        self.batch_key = batch_key
        super().__init__(f"Workflow failed for {batch_key}: {message}")


class EmailDeliveryError(TrialGuardError):
    """The email transport rejected or timed out on a payload."""
    pass


class TaskTransitionError(TrialGuardError):
    """A human status change would leave a task out of step with its signal."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id}: {message}")
