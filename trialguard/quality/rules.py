"""
TRIALGUARD - Rule Catalog
==========================
Declarative, per-domain validation rules for clinical domain records.

Each rule names the fields it reads, a predicate, a severity and a message
template. Predicates are pure: they take the record's field map and a
RuleContext and return the template parameters of a violation, or None.

Rule kinds:
- required_field      field must be present and non-blank
- numeric_range       value within [low, high], bounds from the record or a table
- allowed_values      value must be one of an enumerated set
- valid_date          value must be a real calendar date
- date_order          end date not before start date
- date_window         date inside the trial's study window
- required_when       dependent field required when a trigger field is present
- ordered_bounds      reference range low must not exceed high
- pending_result      result still blank long after collection (stale data)
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from trialguard.database.enums import DiscrepancyType, Severity, SignalType
from trialguard.exceptions import RuleEvaluationError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Predicate = Callable[[Record, "RuleContext"], Optional[Dict[str, Any]]]


# ============================================================
# CONTEXT & DESCRIPTORS
# ============================================================

@dataclass
class RuleContext:
    """Evaluation-time inputs that are not part of the record itself."""
    now: datetime
    trial_id: Optional[str] = None
    study_start: Optional[date] = None
    study_end: Optional[date] = None
    stale_after_days: int = 30


@dataclass
class Rule:
    """A single declarative validation rule."""
    rule_id: str
    domain: str
    discrepancy_type: DiscrepancyType
    severity: Severity
    fields: Tuple[str, ...]
    predicate: Predicate
    message_template: str
    recommended_action: str
    signal_type: SignalType = SignalType.DATA_QUALITY_RISK
    title_template: Optional[str] = None

    def check(self, record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        """Run the predicate. Returns template parameters when violated."""
        return self.predicate(record, context)

    def render_message(self, params: Dict[str, Any]) -> str:
        return self.message_template.format(**params)

    def render_title(self, params: Dict[str, Any]) -> str:
        template = self.title_template or f"{self.domain} {self.discrepancy_type.value.replace('_', ' ')}"
        return template.format(**params)


# ============================================================
# FIELD HELPERS
# ============================================================

DATE_FORMATS = ('%Y-%m-%d', '%Y-%m-%dT%H:%M', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%d %H:%M:%S')


def field_value(record: Record, name: str) -> Optional[str]:
    """Field value as a stripped string, or None when absent/blank."""
    value = record.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_number(record: Record, name: str, rule_id: str) -> Optional[float]:
    """Parse a numeric field. Blank gives None, garbage raises RuleEvaluationError."""
    text = field_value(record, name)
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        raise RuleEvaluationError(rule_id, f"{name} is not numeric: {text!r}")


def try_parse_date(text: str) -> Optional[date]:
    """Parse an ISO 8601 date or datetime string. Returns None if invalid."""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_date(record: Record, name: str, rule_id: str) -> Optional[date]:
    """Parse a date field. Blank gives None, garbage raises RuleEvaluationError."""
    text = field_value(record, name)
    if text is None:
        return None
    parsed = try_parse_date(text)
    if parsed is None:
        raise RuleEvaluationError(rule_id, f"{name} is not a valid date: {text!r}")
    return parsed


def _fmt(number: float) -> str:
    return f"{number:g}"


# ============================================================
# RULE FACTORIES
# ============================================================

def required_field(rule_id: str, domain: str, name: str, severity: Severity = Severity.MEDIUM,
                   signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Field must be present and non-blank."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        if field_value(record, name) is None:
            return {'field': name}
        return None

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.MISSING_FIELD,
        severity=severity,
        fields=(name,),
        predicate=predicate,
        message_template="Required field {field} is missing",
        recommended_action=f"Enter {name} in the source system or document why it is not available",
        signal_type=signal_type,
        title_template=f"Missing {name} in {domain} record",
    )


def numeric_range(
    rule_id: str,
    domain: str,
    value_field: str,
    low_field: Optional[str] = None,
    high_field: Optional[str] = None,
    table: Optional[Dict[str, Tuple[float, float]]] = None,
    key_field: Optional[str] = None,
    severity: Severity = Severity.HIGH,
    signal_type: SignalType = SignalType.DATA_QUALITY_RISK,
) -> Rule:
    """
    Numeric value must lie within an inclusive [low, high] range.

    Bounds come either from fields of the record itself (low_field/high_field,
    e.g. a lab result against its own normal range) or from a static table
    keyed by another field of the record (e.g. vital sign test code).
    A blank value or an unknown bound means the rule does not apply.
    """
    reads = [value_field] + [f for f in (low_field, high_field, key_field) if f]

    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        value = parse_number(record, value_field, rule_id)
        if value is None:
            return None

        if table is not None:
            key = (field_value(record, key_field) or '').upper() if key_field else value_field
            if key not in table:
                return None
            low, high = table[key]
            label = key
        else:
            low = parse_number(record, low_field, rule_id) if low_field else None
            high = parse_number(record, high_field, rule_id) if high_field else None
            if low is None and high is None:
                return None
            label = value_field

        if (low is not None and value < low) or (high is not None and value > high):
            return {
                'field': value_field,
                'label': label,
                'value': _fmt(value),
                'low': _fmt(low) if low is not None else '-inf',
                'high': _fmt(high) if high is not None else 'inf',
            }
        return None

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.OUT_OF_RANGE,
        severity=severity,
        fields=tuple(reads),
        predicate=predicate,
        message_template="{label} value {value} is outside the reference range [{low}, {high}]",
        recommended_action="Verify the value against source documents and query the site if it is a transcription error",
        signal_type=signal_type,
        title_template=f"Out of range {{label}} in {domain} record",
    )


def allowed_values(rule_id: str, domain: str, name: str, values: Iterable[str],
                   severity: Severity = Severity.MEDIUM,
                   signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Value, when present, must be one of an enumerated set (case-insensitive)."""
    allowed = sorted({v.upper() for v in values})

    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        text = field_value(record, name)
        if text is None or text.upper() in allowed:
            return None
        return {'field': name, 'value': text, 'allowed': ', '.join(allowed)}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INVALID_VALUE,
        severity=severity,
        fields=(name,),
        predicate=predicate,
        message_template="{field} has invalid value '{value}' (allowed: {allowed})",
        recommended_action=f"Correct {name} to one of the controlled terminology values",
        signal_type=signal_type,
        title_template=f"Invalid {name} in {domain} record",
    )


def valid_date(rule_id: str, domain: str, name: str, severity: Severity = Severity.MEDIUM,
               signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Date field, when present, must be a real calendar date."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        text = field_value(record, name)
        if text is None or try_parse_date(text) is not None:
            return None
        return {'field': name, 'value': text}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INVALID_VALUE,
        severity=severity,
        fields=(name,),
        predicate=predicate,
        message_template="{field} '{value}' is not a valid date",
        recommended_action=f"Correct {name} to a valid ISO 8601 date",
        signal_type=signal_type,
        title_template=f"Invalid date {name} in {domain} record",
    )


def date_order(rule_id: str, domain: str, start_field: str, end_field: str,
               severity: Severity = Severity.MEDIUM,
               signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """End date must not be before start date."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        start = parse_date(record, start_field, rule_id)
        end = parse_date(record, end_field, rule_id)
        if start is None or end is None or end >= start:
            return None
        return {'start_field': start_field, 'end_field': end_field,
                'start': start.isoformat(), 'end': end.isoformat()}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INCONSISTENT_CROSS_FIELD,
        severity=severity,
        fields=(start_field, end_field),
        predicate=predicate,
        message_template="{end_field} ({end}) is before {start_field} ({start})",
        recommended_action=f"Reconcile {start_field} and {end_field} with the source documents",
        signal_type=signal_type,
        title_template=f"{end_field} before {start_field} in {domain} record",
    )


def date_window(rule_id: str, domain: str, name: str, severity: Severity = Severity.LOW,
                signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Date must fall inside the trial's study window, when one is configured."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        if context.study_start is None and context.study_end is None:
            return None
        value = parse_date(record, name, rule_id)
        if value is None:
            return None
        if ((context.study_start and value < context.study_start)
                or (context.study_end and value > context.study_end)):
            return {
                'field': name,
                'value': value.isoformat(),
                'start': context.study_start.isoformat() if context.study_start else 'open',
                'end': context.study_end.isoformat() if context.study_end else 'open',
            }
        return None

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INCONSISTENT_CROSS_FIELD,
        severity=severity,
        fields=(name,),
        predicate=predicate,
        message_template="{field} {value} is outside the study window {start} to {end}",
        recommended_action=f"Confirm {name}; dates outside the study window usually indicate an entry error",
        signal_type=signal_type,
        title_template=f"{name} outside study window in {domain} record",
    )


def required_when(rule_id: str, domain: str, trigger_field: str, dependent_field: str,
                  severity: Severity = Severity.HIGH,
                  signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Dependent field is required whenever the trigger field is present."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        if field_value(record, trigger_field) is None:
            return None
        if field_value(record, dependent_field) is not None:
            return None
        return {'trigger': trigger_field, 'field': dependent_field,
                'trigger_value': field_value(record, trigger_field)}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INCONSISTENT_CROSS_FIELD,
        severity=severity,
        fields=(trigger_field, dependent_field),
        predicate=predicate,
        message_template="{field} is required when {trigger} is reported ('{trigger_value}')",
        recommended_action=f"Enter {dependent_field} for the reported {trigger_field}",
        signal_type=signal_type,
        title_template=f"{dependent_field} missing for {trigger_field} in {domain} record",
    )


def ordered_bounds(rule_id: str, domain: str, low_field: str, high_field: str,
                   severity: Severity = Severity.MEDIUM,
                   signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Reference range low bound must not exceed the high bound."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        low = parse_number(record, low_field, rule_id)
        high = parse_number(record, high_field, rule_id)
        if low is None or high is None or low <= high:
            return None
        return {'low_field': low_field, 'high_field': high_field, 'low': _fmt(low), 'high': _fmt(high)}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.INCONSISTENT_CROSS_FIELD,
        severity=severity,
        fields=(low_field, high_field),
        predicate=predicate,
        message_template="{low_field} ({low}) is greater than {high_field} ({high})",
        recommended_action="Check the normal range loaded from the central lab",
        signal_type=signal_type,
        title_template=f"Reversed reference range in {domain} record",
    )


def pending_result(rule_id: str, domain: str, date_field: str, result_field: str,
                   severity: Severity = Severity.LOW,
                   signal_type: SignalType = SignalType.DATA_QUALITY_RISK) -> Rule:
    """Result still blank more than stale_after_days after collection."""
    def predicate(record: Record, context: RuleContext) -> Optional[Dict[str, Any]]:
        if field_value(record, result_field) is not None:
            return None
        collected = parse_date(record, date_field, rule_id)
        if collected is None:
            return None
        age = (context.now.date() - collected).days
        if age <= context.stale_after_days:
            return None
        return {'field': result_field, 'date_field': date_field, 'collected': collected.isoformat(),
                'threshold': context.stale_after_days, 'days': age}

    return Rule(
        rule_id=rule_id,
        domain=domain,
        discrepancy_type=DiscrepancyType.STALE_DATA,
        severity=severity,
        fields=(date_field, result_field),
        predicate=predicate,
        message_template="{field} still not reported more than {threshold} days after {date_field} {collected}",
        recommended_action=f"Follow up with the site or vendor for the outstanding {result_field}",
        signal_type=signal_type,
        title_template=f"Outstanding {result_field} in {domain} record",
    )


# ============================================================
# CATALOG
# ============================================================

# Reference ranges for vital signs, keyed by VSTESTCD
VITAL_SIGN_RANGES: Dict[str, Tuple[float, float]] = {
    'SYSBP': (90, 180),
    'DIABP': (60, 100),
    'PULSE': (50, 100),
    'HR': (50, 100),
    'TEMP': (35.5, 38.5),
    'RESP': (12, 20),
    'WEIGHT': (30, 250),
}

DEMOGRAPHIC_RANGES: Dict[str, Tuple[float, float]] = {
    'AGE': (18, 100),
}


class RuleCatalog:
    """
    Ordered rule lists keyed by domain code.

    Usage:
        catalog = RuleCatalog()
        catalog.register(required_field('LB_TEST', 'LB', 'LBTEST'))
        for rule in catalog.rules_for('LB'):
            ...
    """

    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self._rules: Dict[str, List[Rule]] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        """Append a rule to its domain. Rule ids must be unique."""
        domain = rule.domain.upper()
        if any(r.rule_id == rule.rule_id for r in self._rules.get(domain, [])):
            raise ValueError(f"Duplicate rule id {rule.rule_id} in domain {domain}")
        self._rules.setdefault(domain, []).append(rule)

    def rules_for(self, domain: str) -> List[Rule]:
        """Rules for a domain, in registration order. Unknown domains have none."""
        return list(self._rules.get(domain.upper(), []))

    def domains(self) -> List[str]:
        return sorted(self._rules)

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._rules.values())


def _lab_rules() -> List[Rule]:
    lab = SignalType.LAB_TESTING_RISK
    return [
        numeric_range('LB_RESULT_RANGE', 'LB', 'LBORRES', low_field='LBSTNRLO', high_field='LBSTNRHI',
                      severity=Severity.HIGH, signal_type=lab),
        ordered_bounds('LB_RANGE_ORDER', 'LB', 'LBSTNRLO', 'LBSTNRHI', signal_type=lab),
        required_when('LB_UNIT_FOR_RESULT', 'LB', 'LBSTRESN', 'LBSTRESU', severity=Severity.LOW, signal_type=lab),
        valid_date('LB_DATE_VALID', 'LB', 'LBDTC', signal_type=lab),
        pending_result('LB_RESULT_PENDING', 'LB', 'LBDTC', 'LBORRES', signal_type=lab),
    ]


def _vital_sign_rules() -> List[Rule]:
    return [
        required_field('VS_TESTCD', 'VS', 'VSTESTCD'),
        numeric_range('VS_RESULT_RANGE', 'VS', 'VSORRES', table=VITAL_SIGN_RANGES, key_field='VSTESTCD',
                      severity=Severity.HIGH),
        valid_date('VS_DATE_VALID', 'VS', 'VSDTC'),
        date_window('VS_DATE_WINDOW', 'VS', 'VSDTC'),
    ]


def _demographics_rules() -> List[Rule]:
    return [
        required_field('DM_USUBJID', 'DM', 'USUBJID', severity=Severity.HIGH),
        required_field('DM_SEX', 'DM', 'SEX'),
        allowed_values('DM_SEX_VALUES', 'DM', 'SEX', ['M', 'F', 'U', 'UNDIFFERENTIATED']),
        numeric_range('DM_AGE_RANGE', 'DM', 'AGE', table=DEMOGRAPHIC_RANGES, severity=Severity.MEDIUM),
        valid_date('DM_BRTHDTC_VALID', 'DM', 'BRTHDTC'),
        date_order('DM_REF_DATES', 'DM', 'RFSTDTC', 'RFENDTC'),
        date_window('DM_RFSTDTC_WINDOW', 'DM', 'RFSTDTC'),
    ]


def _adverse_event_rules() -> List[Rule]:
    ae = SignalType.AE_RISK
    return [
        required_field('AE_TERM', 'AE', 'AETERM', severity=Severity.HIGH, signal_type=ae),
        required_when('AE_SEV_FOR_TERM', 'AE', 'AETERM', 'AESEV', severity=Severity.HIGH, signal_type=ae),
        allowed_values('AE_SEV_VALUES', 'AE', 'AESEV', ['MILD', 'MODERATE', 'SEVERE'], signal_type=ae),
        allowed_values('AE_SER_VALUES', 'AE', 'AESER', ['Y', 'N'], signal_type=ae),
        valid_date('AE_START_VALID', 'AE', 'AESTDTC', signal_type=ae),
        date_order('AE_DATES', 'AE', 'AESTDTC', 'AEENDTC', signal_type=ae),
    ]


def _serious_adverse_event_rules() -> List[Rule]:
    safety = SignalType.SAFETY_RISK
    return [
        required_field('SAE_TERM', 'SAE', 'SAETERM', severity=Severity.CRITICAL, signal_type=safety),
        required_when('SAE_SEV_FOR_TERM', 'SAE', 'SAETERM', 'SAESEV', severity=Severity.CRITICAL,
                      signal_type=safety),
        required_field('SAE_START', 'SAE', 'SAESTDTC', severity=Severity.HIGH, signal_type=safety),
        allowed_values('SAE_SEV_VALUES', 'SAE', 'SAESEV', ['MILD', 'MODERATE', 'SEVERE'],
                       severity=Severity.HIGH, signal_type=safety),
        allowed_values('SAE_OUTCOME_VALUES', 'SAE', 'SAEOUT',
                       ['RECOVERED', 'RECOVERING', 'NOT RECOVERED', 'RECOVERED WITH SEQUELAE', 'FATAL', 'UNKNOWN'],
                       signal_type=safety),
        date_order('SAE_DATES', 'SAE', 'SAESTDTC', 'SAEENDTC', severity=Severity.HIGH, signal_type=safety),
    ]


def _protocol_deviation_rules() -> List[Rule]:
    pd_risk = SignalType.PD_RISK
    return [
        required_field('PD_TERM', 'PD', 'PDTERM', severity=Severity.HIGH, signal_type=pd_risk),
        allowed_values('PD_SEV_VALUES', 'PD', 'PDSEV', ['MINOR', 'MAJOR', 'CRITICAL'], signal_type=pd_risk),
        date_order('PD_DATES', 'PD', 'PDSTDTC', 'PDENDTC', signal_type=pd_risk),
    ]


def _subject_visit_rules() -> List[Rule]:
    site = SignalType.SITE_RISK
    return [
        required_field('SV_VISIT', 'SV', 'VISIT', signal_type=site),
        valid_date('SV_START_VALID', 'SV', 'SVSTDTC', signal_type=site),
        date_order('SV_DATES', 'SV', 'SVSTDTC', 'SVENDTC', signal_type=site),
        date_window('SV_START_WINDOW', 'SV', 'SVSTDTC', signal_type=site),
    ]


def build_default_catalog() -> RuleCatalog:
    """Catalog with the built-in rules for LB, VS, DM, AE, SAE, PD and SV."""
    catalog = RuleCatalog()
    for rules in (
        _lab_rules(),
        _vital_sign_rules(),
        _demographics_rules(),
        _adverse_event_rules(),
        _serious_adverse_event_rules(),
        _protocol_deviation_rules(),
        _subject_visit_rules(),
    ):
        for rule in rules:
            catalog.register(rule)
    logger.debug(f"Built default rule catalog with {len(catalog)} rules")
    return catalog
