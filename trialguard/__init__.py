"""
TRIALGUARD - Clinical Data Quality Workflow
============================================
Automated discrepancy detection, issue reconciliation, task/signal
materialization and notification fan-out for clinical trial domain data.
"""

__version__ = "1.0.0"
