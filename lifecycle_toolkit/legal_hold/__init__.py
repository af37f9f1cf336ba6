"""
Legal Hold Module - administrative holds that override retention.
"""

from .guard import HoldSnapshot, LegalHoldGuard
from .models import HoldScope, HoldStatus, LegalHold
from .registry import LegalHoldDB, LegalHoldRegistry

__all__ = [
    "HoldScope",
    "HoldStatus",
    "LegalHold",
    "LegalHoldRegistry",
    "LegalHoldDB",
    "LegalHoldGuard",
    "HoldSnapshot",
]
