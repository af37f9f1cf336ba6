"""
Legal hold guard.

Every deletion path asks the guard before touching a record. There is no
bypass: forced purges are checked exactly like scheduled ones.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, List

from .models import LegalHold
from .registry import LegalHoldRegistry


@dataclass(frozen=True)
class HoldSnapshot:
    """Holds relevant to one category, read once per page."""

    category: str
    held_user_ids: FrozenSet[str] = field(default_factory=frozenset)
    category_held: bool = False
    hold_ids: FrozenSet[str] = field(default_factory=frozenset)

    def is_held(self, owner_id: str) -> bool:
        return self.category_held or owner_id in self.held_user_ids


class LegalHoldGuard:
    """Answers whether a record is protected by an active legal hold."""

    def __init__(self, registry: LegalHoldRegistry):
        self.registry = registry

    async def holds_for(self, owner_id: str, category: str) -> List[LegalHold]:
        """Active holds that protect a record of ``owner_id`` in ``category``."""
        holds = await self.registry.active_holds()
        return [h for h in holds if h.applies_to(owner_id, category)]

    async def is_held(self, owner_id: str, category: str) -> bool:
        """
        Check whether a record is protected.

        A hold applies when its category scope is empty or contains the
        category, and its user scope is empty or contains the owner.

        Args:
            owner_id: Owner of the record
            category: Data category of the record

        Returns:
            True if at least one active hold applies
        """
        return bool(await self.holds_for(owner_id, category))

    async def snapshot(self, category: str) -> HoldSnapshot:
        """
        Summarize the active holds for a category so stores can filter.

        A hold whose user scope is empty and whose category scope covers the
        category protects the whole category.
        """
        held_users: set = set()
        category_held = False
        hold_ids: set = set()

        for hold in await self.registry.active_holds():
            if not hold.scope.covers_category(category):
                continue
            hold_ids.add(hold.id)
            if hold.scope.user_ids:
                held_users.update(hold.scope.user_ids)
            else:
                category_held = True

        return HoldSnapshot(
            category=category,
            held_user_ids=frozenset(held_users),
            category_held=category_held,
            hold_ids=frozenset(hold_ids),
        )
