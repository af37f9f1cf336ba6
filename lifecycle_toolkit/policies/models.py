"""
Data models for retention policies.

A retention policy states how long records of one data category may be kept
and how they are disposed of once that period has elapsed.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DeletionMode(str, Enum):
    """How expired records are disposed of."""

    SOFT = "soft"  # Mark deleted, keep storage
    HARD = "hard"  # Remove record and blob


class RetentionPolicy(BaseModel):
    """Retention rule for a single data category."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Policy identifier"
    )
    data_category: str = Field(
        ..., description="Data category this policy governs", min_length=1, max_length=100
    )
    retention_period: timedelta = Field(
        ..., description="How long records are kept before becoming purge-eligible"
    )
    deletion_mode: DeletionMode = Field(
        DeletionMode.HARD, description="Soft or hard deletion of expired records"
    )
    archive_before_delete: bool = Field(
        False, description="Copy each record to the archive target before deleting"
    )
    archive_target: Optional[str] = Field(
        None, description="Archive destination (bucket, directory, ...)", max_length=500
    )
    is_active: bool = Field(True, description="Whether the policy is enforced")
    purge_cadence: Optional[timedelta] = Field(
        None, description="Expected interval between purge runs (config default if unset)"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("retention_period")
    @classmethod
    def validate_retention_period(cls, v: timedelta) -> timedelta:
        """Retention must be a positive duration."""
        if v <= timedelta(0):
            raise ValueError("Retention period must be greater than zero")
        return v

    @field_validator("purge_cadence")
    @classmethod
    def validate_purge_cadence(cls, v: Optional[timedelta]) -> Optional[timedelta]:
        if v is not None and v <= timedelta(0):
            raise ValueError("Purge cadence must be greater than zero")
        return v

    @field_validator("data_category")
    @classmethod
    def normalize_category(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def validate_archive_target(self) -> "RetentionPolicy":
        """Archiving needs somewhere to archive to."""
        if self.archive_before_delete and not self.archive_target:
            raise ValueError("archive_target is required when archive_before_delete is set")
        return self

    @property
    def is_hard_delete(self) -> bool:
        return self.deletion_mode == DeletionMode.HARD

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        """
        Creation time before which records are purge-eligible.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Cutoff timestamp
        """
        return (now or datetime.utcnow()) - self.retention_period

    def describe(self) -> str:
        """Short human readable summary used in logs and the CLI."""
        parts = [f"{self.data_category}: keep {self.retention_period}", f"{self.deletion_mode} delete"]
        if self.archive_before_delete:
            parts.append(f"archive to {self.archive_target}")
        return ", ".join(parts)
