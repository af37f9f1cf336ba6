"""
Data models for retention compliance reports.

Reports are derived entirely from purge jobs, audit entries, policies and
holds, so they can be regenerated for any period at any time.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ViolationType(str, Enum):
    """Ways retention enforcement can fall short."""

    MISSED_CADENCE = "missed_cadence"
    COUNT_MISMATCH = "count_mismatch"
    JOB_FAILED = "job_failed"
    AUDIT_INTEGRITY = "audit_integrity"


class RecommendationType(str, Enum):
    NEEDS_REVIEW = "needs_review"
    GLOBAL_HOLD_ACTIVE = "global_hold_active"
    FORCE_PURGE_REJECTED = "force_purge_rejected"
    MISSING_CONFIGURATION = "missing_configuration"


class Violation(BaseModel):
    """A compliance problem found in the report period."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    type: ViolationType
    message: str
    category: Optional[str] = None
    job_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Recommendation(BaseModel):
    """Operator follow-up suggested by the report."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    type: RecommendationType
    message: str
    category: Optional[str] = None


class CategoryComplianceMetrics(BaseModel):
    """Purge totals of one category over the report period."""

    category: str
    policy_id: Optional[str] = None
    jobs_run: int = 0
    jobs_failed: int = 0
    records_scanned: int = 0
    records_deleted: int = 0
    records_archived: int = 0
    records_failed: int = 0
    records_skipped_held: int = 0
    storage_bytes_freed: int = 0
    last_completed_at: Optional[datetime] = None

    @property
    def failure_rate(self) -> float:
        """Failed records as a percentage of scanned records."""
        if self.records_scanned == 0:
            return 0.0
        return self.records_failed / self.records_scanned * 100


class ComplianceReport(BaseModel):
    """Retention compliance over a period."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    period_start: datetime = Field(..., description="Report period start")
    period_end: datetime = Field(..., description="Report period end")
    generated_by: str = Field("system")
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    jobs_total: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    categories: Dict[str, CategoryComplianceMetrics] = Field(default_factory=dict)
    audit_actions: Dict[str, int] = Field(
        default_factory=dict, description="Audit entries in the period by action"
    )

    violations: List[Violation] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_period(self) -> "ComplianceReport":
        if self.period_end < self.period_start:
            raise ValueError("Report period must end after it starts")
        return self

    @property
    def is_compliant(self) -> bool:
        return not self.violations

    @property
    def records_deleted(self) -> int:
        return sum(c.records_deleted for c in self.categories.values())

    @property
    def records_archived(self) -> int:
        return sum(c.records_archived for c in self.categories.values())

    @property
    def records_failed(self) -> int:
        return sum(c.records_failed for c in self.categories.values())

    @property
    def storage_bytes_freed(self) -> int:
        return sum(c.storage_bytes_freed for c in self.categories.values())

    def violations_of(self, violation_type: ViolationType) -> List[Violation]:
        return [v for v in self.violations if v.type == ViolationType(violation_type).value]
