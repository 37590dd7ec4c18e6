"""
TRIALGUARD - Discrepancy Evaluator
===================================
Runs the rule catalog over one domain record and produces findings.

Evaluation is pure: no database access, no clock reads beyond the injected
clock. A rule that cannot read its fields yields a malformed_data finding
instead of aborting the record.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from trialguard.database.enums import DiscrepancyType, Severity, SignalType
from trialguard.database.models import utcnow
from trialguard.exceptions import RuleEvaluationError
from .rules import Rule, RuleCatalog, RuleContext, build_default_catalog

logger = logging.getLogger(__name__)


@dataclass
class DiscrepancyFinding:
    """One discrepancy detected on one record during an evaluation run."""
    discrepancy_type: DiscrepancyType
    severity: Severity
    message: str
    trial_id: str
    domain: str
    source: str
    record_id: str
    affected_fields: List[str]
    recommended_action: str
    rule_id: str
    title: str
    signal_type: SignalType = SignalType.DATA_QUALITY_RISK
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str, str, str, str]:
        return (self.trial_id, self.domain, self.source, self.record_id, self.discrepancy_type.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discrepancy_type": self.discrepancy_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "trial_id": self.trial_id,
            "domain": self.domain,
            "source": self.source,
            "record_id": self.record_id,
            "affected_fields": list(self.affected_fields),
            "recommended_action": self.recommended_action,
            "rule_id": self.rule_id,
            "title": self.title,
            "signal_type": self.signal_type.value,
            "context": dict(self.context),
        }


def changed_fields(current: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> List[str]:
    """Field names whose value differs between two versions of a record."""
    if previous is None:
        return []
    names = set(current) | set(previous)
    return sorted(n for n in names if current.get(n) != previous.get(n))


class DiscrepancyEvaluator:
    """
    Evaluates domain records against the rule catalog.

    Usage:
        evaluator = DiscrepancyEvaluator()
        findings = evaluator.evaluate('LB', record, trial_id='TRIAL-1',
                                      source='Central Lab', record_id='LB-001')
    """

    def __init__(
        self,
        catalog: Optional[RuleCatalog] = None,
        study_windows: Optional[Dict[str, Tuple[Optional[date], Optional[date]]]] = None,
        stale_after_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.catalog = catalog or build_default_catalog()
        self.study_windows = study_windows or {}
        self.stale_after_days = stale_after_days
        self.clock = clock or utcnow

    def _context(self, trial_id: Optional[str]) -> RuleContext:
        start, end = self.study_windows.get(trial_id, (None, None)) if trial_id else (None, None)
        return RuleContext(
            now=self.clock(),
            trial_id=trial_id,
            study_start=start,
            study_end=end,
            stale_after_days=self.stale_after_days,
        )

    def evaluate(
        self,
        domain: str,
        record: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None,
        trial_id: str = '',
        source: str = '',
        record_id: str = '',
    ) -> List[DiscrepancyFinding]:
        """
        Evaluate one record.

        Args:
            domain: Domain code (LB, VS, DM, AE, SAE, PD, SV)
            record: Current field map
            previous: Prior version of the field map, if known
            trial_id, source, record_id: Identity stamped on each finding

        Returns:
            Findings ordered by severity (Critical first), then rule order
        """
        domain = domain.upper()
        rules = self.catalog.rules_for(domain)
        if not rules:
            logger.debug(f"No rules registered for domain {domain}")
            return []

        context = self._context(trial_id)
        changed = changed_fields(record, previous)
        findings: List[DiscrepancyFinding] = []

        for rule in rules:
            try:
                params = rule.check(record, context)
            except (RuleEvaluationError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Rule {rule.rule_id} failed on {domain}/{source}/{record_id}: {e}")
                findings.append(self._malformed(rule, e, trial_id, domain, source, record_id, changed))
                continue

            if params is None:
                continue

            # Per-run values such as an age in days stay out of the message
            finding_context = {'values': {f: record.get(f) for f in rule.fields}, 'details': dict(params)}
            if changed:
                finding_context['changed_fields'] = changed
            findings.append(DiscrepancyFinding(
                discrepancy_type=rule.discrepancy_type,
                severity=rule.severity,
                message=rule.render_message(params),
                trial_id=trial_id,
                domain=domain,
                source=source,
                record_id=record_id,
                affected_fields=list(rule.fields),
                recommended_action=rule.recommended_action,
                rule_id=rule.rule_id,
                title=rule.render_title(params),
                signal_type=rule.signal_type,
                context=finding_context,
            ))

        # Stable sort keeps rule order within a severity
        findings.sort(key=lambda f: f.severity.rank)
        return findings

    def _malformed(self, rule: Rule, error: Exception, trial_id: str, domain: str,
                   source: str, record_id: str, changed: List[str]) -> DiscrepancyFinding:
        detail = str(error)
        if isinstance(error, RuleEvaluationError):
            detail = detail.split(': ', 1)[-1]
        context: Dict[str, Any] = {'error': detail}
        if changed:
            context['changed_fields'] = changed
        return DiscrepancyFinding(
            discrepancy_type=DiscrepancyType.MALFORMED_DATA,
            severity=Severity.HIGH,
            message=f"Could not evaluate {rule.rule_id}: {detail}",
            trial_id=trial_id,
            domain=domain,
            source=source,
            record_id=record_id,
            affected_fields=list(rule.fields),
            recommended_action="Correct the unreadable value so the record can be validated",
            rule_id=rule.rule_id,
            title=f"Malformed data in {domain} record",
            signal_type=rule.signal_type,
            context=context,
        )
