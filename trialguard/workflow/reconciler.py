"""
TRIALGUARD - Issue Reconciler
==============================
Diffs current findings against open signals and plans create / update /
resolve actions. Pure: reads nothing and writes nothing.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set

from trialguard.database.enums import Severity
from trialguard.quality.evaluator import DiscrepancyFinding

logger = logging.getLogger(__name__)


class IssueKey(NamedTuple):
    """Natural key of an issue: one open signal at most per key."""
    trial_id: str
    domain: str
    source: str
    record_id: str
    discrepancy_type: str

    @classmethod
    def of_signal(cls, signal: Any) -> 'IssueKey':
        return cls(signal.trial_id, signal.domain, signal.source, signal.record_id, signal.discrepancy_type)

    @classmethod
    def of_finding(cls, finding: DiscrepancyFinding) -> 'IssueKey':
        return cls(*finding.key)

    def __str__(self) -> str:
        return '/'.join(self)


class ActionType(str, Enum):
    """What the materializer should do for one key."""
    CREATE = "create"
    UPDATE = "update"
    RESOLVE = "resolve"


class ResolveReason(str, Enum):
    DATA_CORRECTED = "data_corrected"
    RECORD_DELETED = "record_deleted"


@dataclass
class PlannedAction:
    """A single planned change."""
    action: ActionType
    key: IssueKey
    severity: Severity
    finding: Optional[DiscrepancyFinding] = None
    signal_id: Optional[int] = None
    reason: Optional[ResolveReason] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "key": str(self.key),
            "severity": self.severity.value,
            "signal_id": self.signal_id,
            "reason": self.reason.value if self.reason else None,
            "message": self.finding.message if self.finding else None,
        }


@dataclass
class ReconciliationPlan:
    """Ordered actions for one batch."""
    actions: List[PlannedAction] = field(default_factory=list)
    unchanged: int = 0

    @property
    def creates(self) -> List[PlannedAction]:
        return [a for a in self.actions if a.action == ActionType.CREATE]

    @property
    def updates(self) -> List[PlannedAction]:
        return [a for a in self.actions if a.action == ActionType.UPDATE]

    @property
    def resolves(self) -> List[PlannedAction]:
        return [a for a in self.actions if a.action == ActionType.RESOLVE]

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creates": len(self.creates),
            "updates": len(self.updates),
            "resolves": len(self.resolves),
            "unchanged": self.unchanged,
            "actions": [a.to_dict() for a in self.actions],
        }


def merge_findings(findings: Iterable[DiscrepancyFinding]) -> Dict[IssueKey, DiscrepancyFinding]:
    """
    Collapse findings that share a natural key.

    The most severe finding wins; messages of the others are appended so
    nothing is hidden from the reviewer.
    """
    findings = list(findings)
    merged: Dict[IssueKey, DiscrepancyFinding] = {}
    extra_messages: Dict[IssueKey, List[str]] = {}

    for finding in sorted(findings, key=lambda f: f.severity.rank):
        key = IssueKey.of_finding(finding)
        if key not in merged:
            merged[key] = finding
            extra_messages[key] = []
        elif finding.message != merged[key].message:
            extra_messages[key].append(finding.message)

    for key, extras in extra_messages.items():
        if not extras:
            continue
        base = merged[key]
        fields = list(dict.fromkeys(base.affected_fields + [
            f for extra in findings if IssueKey.of_finding(extra) == key for f in extra.affected_fields
        ]))
        merged[key] = DiscrepancyFinding(
            discrepancy_type=base.discrepancy_type,
            severity=base.severity,
            message='; '.join([base.message] + extras),
            trial_id=base.trial_id,
            domain=base.domain,
            source=base.source,
            record_id=base.record_id,
            affected_fields=fields,
            recommended_action=base.recommended_action,
            rule_id=base.rule_id,
            title=base.title,
            signal_type=base.signal_type,
            context=base.context,
        )
    return merged


class IssueReconciler:
    """
    Plans the minimal set of changes that brings open signals in line with
    the current findings.

    Rules:
    - finding with an open signal: nothing, or update when severity/message changed
    - finding without an open signal: create
    - open signal without a finding: resolve
    """

    def reconcile(
        self,
        findings: Iterable[DiscrepancyFinding],
        open_signals: Iterable[Any],
        evaluated_record_ids: Optional[Set[str]] = None,
        deleted_record_ids: Optional[Set[str]] = None,
    ) -> ReconciliationPlan:
        """
        Build a reconciliation plan.

        Args:
            findings: All findings of the evaluated records
            open_signals: Open signals of the same batch key (ORM rows or any
                object with the natural key attributes, id, priority, observation)
            evaluated_record_ids: When given, signals on other records are left alone
            deleted_record_ids: Records that no longer exist (resolution reason)

        Returns:
            ReconciliationPlan ordered by severity, then key
        """
        findings = list(findings)
        current = merge_findings(findings)
        deleted_record_ids = deleted_record_ids or set()

        existing: Dict[IssueKey, Any] = {}
        for signal in sorted(open_signals, key=lambda s: (s.id is None, s.id or 0)):
            key = IssueKey.of_signal(signal)
            if key in existing:
                # Should not happen with the partial unique index; keep the oldest (lowest id)
                logger.warning(f"Duplicate open signals for {key}")
                continue
            existing[key] = signal

        plan = ReconciliationPlan()

        for key, finding in current.items():
            signal = existing.get(key)
            if signal is None:
                plan.actions.append(PlannedAction(
                    action=ActionType.CREATE, key=key, severity=finding.severity, finding=finding,
                ))
            elif signal.priority != finding.severity.value or signal.observation != finding.message:
                plan.actions.append(PlannedAction(
                    action=ActionType.UPDATE, key=key, severity=finding.severity,
                    finding=finding, signal_id=signal.id,
                ))
            else:
                plan.unchanged += 1

        for key, signal in existing.items():
            if key in current:
                continue
            if evaluated_record_ids is not None and key.record_id not in evaluated_record_ids:
                continue
            reason = (ResolveReason.RECORD_DELETED if key.record_id in deleted_record_ids
                      else ResolveReason.DATA_CORRECTED)
            plan.actions.append(PlannedAction(
                action=ActionType.RESOLVE, key=key, severity=Severity(signal.priority),
                signal_id=signal.id, reason=reason,
            ))

        plan.actions.sort(key=lambda a: (a.severity.rank, tuple(a.key), a.action.value))

        logger.debug(
            f"Reconciled {len(findings)} findings against {len(existing)} open signals: "
            f"{len(plan.creates)} create, {len(plan.updates)} update, {len(plan.resolves)} resolve"
        )
        return plan
