"""
Retention Policies - one active retention rule per data category.
"""

from .models import DeletionMode, RetentionPolicy
from .store import PolicyStore, RetentionPolicyDB

__all__ = [
    "DeletionMode",
    "RetentionPolicy",
    "PolicyStore",
    "RetentionPolicyDB",
]
