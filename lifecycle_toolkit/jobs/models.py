"""
Data models for purge jobs.

A purge job is one bounded execution of the purge algorithm. It moves
through ``pending -> running -> completed | failed | cancelled`` exactly once
and is immutable after reaching a terminal state.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Purge job states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobTrigger(str, Enum):
    """What started a purge job."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    DRY_RUN = "dry_run"
    FORCE = "force"


TERMINAL_STATUSES: FrozenSet[str] = frozenset(
    {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JobStatus.PENDING.value: frozenset({JobStatus.RUNNING.value, JobStatus.FAILED.value}),
    JobStatus.RUNNING.value: frozenset(
        {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
    ),
}


class CategoryMetrics(BaseModel):
    """Per-category counters of a purge job."""

    records_scanned: int = 0
    records_deleted: int = 0
    records_archived: int = 0
    records_failed: int = 0
    records_skipped_held: int = 0
    storage_bytes_freed: int = 0
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    cutoff: Optional[datetime] = None
    policy_id: Optional[str] = None


class PurgeJob(BaseModel):
    """One execution of the purge algorithm with its metrics."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trigger: JobTrigger = Field(JobTrigger.MANUAL)
    target_categories: List[str] = Field(default_factory=list)
    status: JobStatus = Field(JobStatus.PENDING)
    actor: str = Field("system")

    records_scanned: int = 0
    records_deleted: int = 0
    records_archived: int = 0
    records_failed: int = 0
    storage_bytes_freed: int = 0
    category_metrics: Dict[str, CategoryMetrics] = Field(default_factory=dict)

    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_dry_run(self) -> bool:
        return self.trigger == JobTrigger.DRY_RUN

    @property
    def duration(self) -> Optional[timedelta]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    @property
    def failure_rate(self) -> float:
        """Failed records as a percentage of scanned records."""
        if self.records_scanned == 0:
            return 0.0
        return self.records_failed / self.records_scanned * 100

    def apply_metrics(self, metrics: Dict[str, CategoryMetrics]) -> None:
        """Replace the per-category metrics and recompute the job totals."""
        self.category_metrics = metrics
        self.records_scanned = sum(m.records_scanned for m in metrics.values())
        self.records_deleted = sum(m.records_deleted for m in metrics.values())
        self.records_archived = sum(m.records_archived for m in metrics.values())
        self.records_failed = sum(m.records_failed for m in metrics.values())
        self.storage_bytes_freed = sum(m.storage_bytes_freed for m in metrics.values())
