"""
Data Lifecycle Toolkit - retention enforcement with an auditable purge trail.

The toolkit enforces time-bounded retention of stored records: it deletes or
archives expired data, respects legal holds that override retention, and
records every destructive action in an append-only, checksummed audit log.

Key Features
------------
* **Retention Policies**: One active policy per data category (soft or hard
  delete, optional archive before delete)
* **Legal Holds**: Holds scoped by user and/or category that no purge path
  can bypass
* **Purge Executor**: Paged, concurrent, idempotent purge runs with per-record
  retries and a durable lock per category
* **Audit Trail**: Every archive and deletion is audited; job counters are
  derived from the audit trail
* **Compliance Reports**: Missed cadences, count mismatches, failed jobs and
  integrity problems

Quick Start
-----------
>>> from lifecycle_toolkit import LifecycleService, LifecycleConfig, CategoryRegistry
>>> from lifecycle_toolkit.purge import StoreBackedCategory, SQLRecordStore, LocalBlobStore
>>>
>>> registry = CategoryRegistry()
>>> registry.register(
...     StoreBackedCategory("exports", SQLRecordStore(engine, ExportRow, "exports"),
...                         LocalBlobStore("/srv/exports"))
... )
>>> service = LifecycleService.from_config(LifecycleConfig(), registry)
>>> await service.set_policy("exports", timedelta(hours=24))
>>> job = await service.trigger_run()

Note: categories are never purged by default. A category without an active
retention policy is skipped.
"""

__version__ = "1.0.0"

from .audit_trail import AuditEntry, AuditLog, AuditQuery
from .compliance import ComplianceReport, ComplianceReporter
from .config import LifecycleConfig, configure, get_config, set_config
from .database import Database
from .exceptions import (
    AuditWriteFailure,
    ConfigurationError,
    HoldViolationAttempt,
    JobConflictError,
    LifecycleError,
    TransientIOError,
)
from .jobs import JobStatus, JobTracker, JobTrigger, PurgeJob
from .legal_hold import HoldScope, LegalHold, LegalHoldGuard, LegalHoldRegistry
from .policies import DeletionMode, PolicyStore, RetentionPolicy
from .purge import (
    CategoryRegistry,
    ForcePurgeResult,
    PurgeableCategory,
    PurgeableRecord,
    PurgeExecutor,
    RunOptions,
)
from .service import LifecycleService

__all__ = [
    # Service
    "LifecycleService",
    "Database",
    # Configuration
    "LifecycleConfig",
    "get_config",
    "set_config",
    "configure",
    # Policies
    "RetentionPolicy",
    "DeletionMode",
    "PolicyStore",
    # Legal holds
    "LegalHold",
    "HoldScope",
    "LegalHoldRegistry",
    "LegalHoldGuard",
    # Purge
    "PurgeExecutor",
    "RunOptions",
    "ForcePurgeResult",
    "PurgeableCategory",
    "PurgeableRecord",
    "CategoryRegistry",
    # Jobs
    "PurgeJob",
    "JobStatus",
    "JobTrigger",
    "JobTracker",
    # Audit
    "AuditLog",
    "AuditEntry",
    "AuditQuery",
    # Compliance
    "ComplianceReporter",
    "ComplianceReport",
    # Exceptions
    "LifecycleError",
    "ConfigurationError",
    "TransientIOError",
    "HoldViolationAttempt",
    "JobConflictError",
    "AuditWriteFailure",
]
