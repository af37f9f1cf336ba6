"""
Data models for the purge audit trail.

Every destructive action the engine takes is recorded as an immutable
audit entry. Entries carry a checksum so tampering can be detected.
"""

import hashlib
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class AuditAction(str, Enum):
    """Fixed audit actions. Record-level actions are derived per category."""

    FORCE_PURGE_REJECTED = "force_purge_rejected"
    LEGAL_HOLD_CREATED = "legal_hold_created"
    LEGAL_HOLD_RELEASED = "legal_hold_released"
    POLICY_CHANGED = "policy_changed"
    POLICY_DEACTIVATED = "policy_deactivated"
    JOB_CANCEL_REQUESTED = "job_cancel_requested"


class PurgeOperation(str, Enum):
    """Destructive operations that count toward a job's counters."""

    ARCHIVE = "archive"
    SOFT_DELETE = "soft_delete"
    HARD_DELETE = "hard_delete"

    @property
    def verb(self) -> str:
        return {
            PurgeOperation.ARCHIVE: "archived",
            PurgeOperation.SOFT_DELETE: "soft_deleted",
            PurgeOperation.HARD_DELETE: "purged",
        }[self]

    @property
    def is_deletion(self) -> bool:
        return self is not PurgeOperation.ARCHIVE


def record_action(resource_type: str, operation: PurgeOperation) -> str:
    """
    Audit action name for a record-level operation.

    >>> record_action("export", PurgeOperation.HARD_DELETE)
    'export_purged'
    """
    return f"{resource_type}_{operation.verb}"


class AuditEntry(BaseModel):
    """
    Immutable audit trail entry.

    Each entry captures what was done (action, operation), to what
    (resource, category), on whose behalf (actor), within which purge job,
    and under which policy.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for the audit entry",
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow, description="UTC timestamp of the action"
    )

    action: str = Field(..., description="Action performed", min_length=1, max_length=100)
    resource_type: str = Field(..., description="Type of resource affected", max_length=100)
    resource_id: str = Field(..., description="ID of resource affected")

    job_id: Optional[str] = Field(None, description="Purge job the action belongs to")
    policy_id: Optional[str] = Field(None, description="Policy that made it eligible")
    category: Optional[str] = Field(None, description="Data category of the resource")
    operation: Optional[PurgeOperation] = Field(
        None, description="Destructive operation, if any"
    )

    actor: str = Field("system", description="User or process responsible")
    success: bool = Field(True, description="Whether the action succeeded")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Additional context-specific details"
    )

    checksum: Optional[str] = Field(
        None, description="Checksum of the entry for integrity verification"
    )

    def calculate_checksum(self) -> str:
        """
        Calculate a SHA-256 checksum over the identifying fields.

        Returns:
            Hex digest of the checksum
        """
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "job_id": self.job_id,
            "policy_id": self.policy_id,
            "category": self.category,
            "operation": self.operation,
            "actor": self.actor,
            "success": self.success,
            "metadata": self.metadata,
        }

        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def verify_checksum(self, expected_checksum: str) -> bool:
        """Verify the integrity of the audit entry."""
        return self.calculate_checksum() == expected_checksum

    def sealed(self) -> "AuditEntry":
        """Return a copy with its checksum filled in."""
        entry = self.model_copy()
        entry.checksum = entry.calculate_checksum()
        return entry

    @property
    def bytes_freed(self) -> int:
        return int(self.metadata.get("bytes_freed", 0) or 0)

    def to_log_format(self) -> str:
        """
        Convert to a standardized log format string.

        Returns:
            Formatted log string
        """
        parts = [
            f"[{self.timestamp.isoformat()}]",
            f"ACTOR={self.actor}",
            f"ACTION={self.action}",
            f"RESOURCE={self.resource_type}:{self.resource_id}",
        ]

        if self.job_id:
            parts.append(f"JOB={self.job_id}")

        if not self.success:
            parts.append("FAILED")

        return " ".join(parts)


class AuditQuery(BaseModel):
    """Query parameters for searching the audit log."""

    # Time range
    start_date: Optional[datetime] = Field(None, description="Start of time range")
    end_date: Optional[datetime] = Field(None, description="End of time range")

    actors: Optional[List[str]] = Field(None, description="Filter by actor")
    actions: Optional[List[str]] = Field(None, description="Filter by action")
    resource_types: Optional[List[str]] = Field(None, description="Filter by resource type")
    resource_ids: Optional[List[str]] = Field(None, description="Filter by resource ID")
    job_ids: Optional[List[str]] = Field(None, description="Filter by purge job")
    categories: Optional[List[str]] = Field(None, description="Filter by data category")

    success_only: bool = Field(False, description="Only show successful actions")
    failures_only: bool = Field(False, description="Only show failed actions")

    # Pagination
    limit: int = Field(100, description="Maximum results to return", gt=0, le=10000)
    offset: int = Field(0, description="Result offset for pagination", ge=0)

    sort_desc: bool = Field(True, description="Newest first")

    @field_validator("end_date")
    @classmethod
    def validate_date_range(
        cls, v: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        """Ensure end date is after start date."""
        if v and "start_date" in info.data and info.data["start_date"]:
            if v < info.data["start_date"]:
                raise ValueError("End date must be after start date")
        return v


class CategoryTotals(BaseModel):
    """Counters for one category derived from committed audit entries."""

    deleted: int = 0
    archived: int = 0
    bytes_freed: int = 0


class JobAuditTotals(BaseModel):
    """Counters for one purge job derived from committed audit entries."""

    job_id: str
    by_category: Dict[str, CategoryTotals] = Field(default_factory=dict)

    @property
    def deleted(self) -> int:
        return sum(t.deleted for t in self.by_category.values())

    @property
    def archived(self) -> int:
        return sum(t.archived for t in self.by_category.values())

    @property
    def bytes_freed(self) -> int:
        return sum(t.bytes_freed for t in self.by_category.values())

    @property
    def entry_count(self) -> int:
        return self.deleted + self.archived

    def add(self, entry: AuditEntry) -> None:
        """Add a committed entry to the totals."""
        if entry.operation is None:
            return
        totals = self.by_category.setdefault(entry.category or "", CategoryTotals())
        if PurgeOperation(entry.operation).is_deletion:
            totals.deleted += 1
            totals.bytes_freed += entry.bytes_freed
        else:
            totals.archived += 1
