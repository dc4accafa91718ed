"""Drift detection and repair across billing, database and platform."""

from .auto_fixer import AutoFixer
from .drift_detector import DriftDetector, DriftReport, classify_member
from .notifications import AdminNotifier
from .reconcile import ReconciliationService
from .summary import format_summary

__all__ = [
    "AdminNotifier",
    "AutoFixer",
    "DriftDetector",
    "DriftReport",
    "ReconciliationService",
    "classify_member",
    "format_summary",
]
