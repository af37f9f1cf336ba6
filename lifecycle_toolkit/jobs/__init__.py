"""
Purge Jobs - lifecycle, metrics and per-category run locks.
"""

from .models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CategoryMetrics,
    JobStatus,
    JobTrigger,
    PurgeJob,
)
from .tracker import CategoryLockDB, JobTracker, PurgeJobDB

__all__ = [
    "JobTracker",
    "PurgeJob",
    "PurgeJobDB",
    "CategoryLockDB",
    "CategoryMetrics",
    "JobStatus",
    "JobTrigger",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
]
