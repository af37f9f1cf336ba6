"""
Audit Trail Module - append-only record of every destructive action.

Provides the audit entry models, the SQL-backed append-only log and the
local spool used when an entry cannot be committed.
"""

from .log import AuditEntryDB, AuditLog
from .models import (
    AuditAction,
    AuditEntry,
    AuditQuery,
    CategoryTotals,
    JobAuditTotals,
    PurgeOperation,
    record_action,
)
from .spool import AuditSpool

__all__ = [
    # Log
    "AuditLog",
    "AuditEntryDB",
    "AuditSpool",
    # Models
    "AuditAction",
    "AuditEntry",
    "AuditQuery",
    "PurgeOperation",
    "CategoryTotals",
    "JobAuditTotals",
    "record_action",
]
