"""
Data models for legal holds.

A legal hold suspends purging for every record it matches, regardless of
the retention policy of the record's category.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HoldStatus(str, Enum):
    """Lifecycle of a legal hold."""

    ACTIVE = "active"
    RELEASED = "released"


class HoldScope(BaseModel):
    """
    Which records a hold protects.

    Each dimension is matched independently and an empty set is a wildcard
    for that dimension only:

    * ``user_ids={"u1"}, data_categories=set()`` holds every category of u1
    * ``user_ids=set(), data_categories={"exports"}`` holds all exports
    * both empty holds everything (a global hold)
    """

    model_config = ConfigDict(frozen=True)

    user_ids: FrozenSet[str] = Field(
        default_factory=frozenset, description="Owners whose records are held"
    )
    data_categories: FrozenSet[str] = Field(
        default_factory=frozenset, description="Categories whose records are held"
    )

    @property
    def is_global(self) -> bool:
        return not self.user_ids and not self.data_categories

    def covers_category(self, category: str) -> bool:
        return not self.data_categories or category in self.data_categories

    def matches(self, owner_id: str, category: str) -> bool:
        """Check whether a record owned by ``owner_id`` in ``category`` is held."""
        if not self.covers_category(category):
            return False
        return not self.user_ids or owner_id in self.user_ids


class LegalHold(BaseModel):
    """Administrative hold that overrides retention."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: HoldStatus = Field(HoldStatus.ACTIVE)
    scope: HoldScope = Field(default_factory=HoldScope)
    reason: str = Field(
        ..., description="Why the hold exists (case, ticket, ...)", min_length=10, max_length=500
    )
    created_by: str = Field(..., min_length=1, max_length=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    released_at: Optional[datetime] = Field(None)
    released_by: Optional[str] = Field(None, max_length=100)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def validate_release_fields(self) -> "LegalHold":
        """Released holds carry their release timestamp; active ones do not."""
        if self.status == HoldStatus.RELEASED and self.released_at is None:
            raise ValueError("Released holds must have released_at")
        if self.status == HoldStatus.ACTIVE and self.released_at is not None:
            raise ValueError("Active holds cannot have released_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE

    def applies_to(self, owner_id: str, category: str) -> bool:
        return self.is_active and self.scope.matches(owner_id, category)
