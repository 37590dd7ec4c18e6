"""
TRIALGUARD - Data Quality Package
==================================
Rule catalog and discrepancy evaluation for clinical domain records.
"""

from .rules import (
    Rule,
    RuleCatalog,
    RuleContext,
    build_default_catalog,
    required_field,
    numeric_range,
    allowed_values,
    valid_date,
    date_order,
    date_window,
    required_when,
    ordered_bounds,
    pending_result,
)
from .evaluator import DiscrepancyEvaluator, DiscrepancyFinding

__all__ = [
    'Rule',
    'RuleCatalog',
    'RuleContext',
    'build_default_catalog',
    'required_field',
    'numeric_range',
    'allowed_values',
    'valid_date',
    'date_order',
    'date_window',
    'required_when',
    'ordered_bounds',
    'pending_result',
    'DiscrepancyEvaluator',
    'DiscrepancyFinding',
]
