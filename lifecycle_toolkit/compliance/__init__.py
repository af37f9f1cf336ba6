"""
Compliance Module - retention compliance reports derived from the audit trail.
"""

from .models import (
    CategoryComplianceMetrics,
    ComplianceReport,
    Recommendation,
    RecommendationType,
    Violation,
    ViolationType,
)
from .reporter import ComplianceReporter
from .store import ComplianceReportDB, ComplianceReportStore

__all__ = [
    "ComplianceReporter",
    "ComplianceReportStore",
    "ComplianceReportDB",
    "ComplianceReport",
    "CategoryComplianceMetrics",
    "Violation",
    "ViolationType",
    "Recommendation",
    "RecommendationType",
]
