"""
Tests for legal holds.

Covers hold scope matching, the registry lifecycle and the guard that every
deletion path consults.
"""

import pytest
from pydantic import ValidationError

from lifecycle_toolkit.exceptions import HoldNotFoundError, LegalHoldError
from lifecycle_toolkit.legal_hold import (
    HoldScope,
    HoldStatus,
    LegalHold,
    LegalHoldGuard,
    LegalHoldRegistry,
)

REASON = "Litigation hold, case 2024-17"


@pytest.fixture
def registry(database):
    return LegalHoldRegistry(database)


@pytest.fixture
def guard(registry):
    return LegalHoldGuard(registry)


def scope(users=(), categories=()):
    return HoldScope(user_ids=frozenset(users), data_categories=frozenset(categories))


class TestHoldScope:
    """Each scope dimension is a wildcard only for itself."""

    @pytest.mark.parametrize(
        "users,categories,owner,category,expected",
        [
            (["U1"], [], "U1", "exports", True),
            (["U1"], [], "U1", "uploads", True),
            (["U1"], [], "U2", "exports", False),
            ([], ["exports"], "U2", "exports", True),
            ([], ["exports"], "U2", "uploads", False),
            (["U1"], ["exports"], "U1", "exports", True),
            (["U1"], ["exports"], "U1", "uploads", False),
            (["U1"], ["exports"], "U2", "exports", False),
            ([], [], "anyone", "anything", True),
        ],
    )
    def test_matches(self, users, categories, owner, category, expected):
        assert scope(users, categories).matches(owner, category) is expected

    def test_global(self):
        assert scope().is_global
        assert not scope(users=["U1"]).is_global


class TestLegalHoldModel:
    def test_reason_is_required(self):
        with pytest.raises(ValidationError):
            LegalHold(scope=scope(users=["U1"]), reason="short", created_by="legal")

    def test_released_hold_needs_timestamp(self):
        with pytest.raises(ValidationError, match="released_at"):
            LegalHold(
                scope=scope(users=["U1"]),
                reason=REASON,
                created_by="legal",
                status=HoldStatus.RELEASED,
            )

    def test_released_hold_does_not_apply(self):
        hold = LegalHold(scope=scope(users=["U1"]), reason=REASON, created_by="legal")
        assert hold.applies_to("U1", "exports")
        hold.status = HoldStatus.RELEASED.value
        assert not hold.applies_to("U1", "exports")


class TestLegalHoldRegistry:
    @pytest.mark.asyncio
    async def test_create_and_release(self, registry):
        hold = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        assert hold.is_active
        assert [h.id for h in await registry.active_holds()] == [hold.id]

        released = await registry.release_hold(hold.id, "counsel")

        assert released.status == HoldStatus.RELEASED.value
        assert released.released_by == "counsel"
        assert released.released_at is not None
        assert await registry.active_holds() == []
        assert (await registry.get_hold(hold.id)).scope.user_ids == frozenset({"U1"})

    @pytest.mark.asyncio
    async def test_global_hold_requires_opt_in(self, registry):
        with pytest.raises(LegalHoldError, match="allow_global"):
            await registry.create_hold(scope(), REASON, "legal")

        hold = await registry.create_hold(scope(), REASON, "legal", allow_global=True)
        assert hold.scope.is_global

    @pytest.mark.asyncio
    async def test_release_twice_fails(self, registry):
        hold = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        await registry.release_hold(hold.id, "counsel")

        with pytest.raises(LegalHoldError, match="no longer be changed"):
            await registry.release_hold(hold.id, "counsel")

    @pytest.mark.asyncio
    async def test_unknown_hold(self, registry):
        with pytest.raises(HoldNotFoundError):
            await registry.get_hold("missing")
        with pytest.raises(HoldNotFoundError):
            await registry.release_hold("missing", "counsel")

    @pytest.mark.asyncio
    async def test_list_by_status(self, registry):
        active = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        released = await registry.create_hold(scope(users=["U2"]), REASON, "legal")
        await registry.release_hold(released.id, "counsel")

        assert [h.id for h in await registry.list_holds(HoldStatus.ACTIVE)] == [active.id]
        assert [h.id for h in await registry.list_holds(HoldStatus.RELEASED)] == [released.id]
        assert len(await registry.list_holds()) == 2


class TestLegalHoldGuard:
    @pytest.mark.asyncio
    async def test_is_held(self, registry, guard):
        await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        await registry.create_hold(scope(categories=["uploads"]), REASON, "legal")

        assert await guard.is_held("U1", "exports")
        assert await guard.is_held("U2", "uploads")
        assert not await guard.is_held("U2", "exports")

    @pytest.mark.asyncio
    async def test_released_hold_stops_protecting(self, registry, guard):
        hold = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        await registry.release_hold(hold.id, "counsel")

        assert not await guard.is_held("U1", "exports")

    @pytest.mark.asyncio
    async def test_holds_for(self, registry, guard):
        user_hold = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        both = await registry.create_hold(scope(["U1"], ["exports"]), REASON, "legal")

        assert {h.id for h in await guard.holds_for("U1", "exports")} == {
            user_hold.id,
            both.id,
        }
        assert [h.id for h in await guard.holds_for("U1", "uploads")] == [user_hold.id]

    @pytest.mark.asyncio
    async def test_snapshot(self, registry, guard):
        user_hold = await registry.create_hold(scope(users=["U1"]), REASON, "legal")
        await registry.create_hold(scope(["U2"], ["uploads"]), REASON, "legal")

        snapshot = await guard.snapshot("exports")

        assert snapshot.held_user_ids == frozenset({"U1"})
        assert not snapshot.category_held
        assert snapshot.hold_ids == frozenset({user_hold.id})
        assert snapshot.is_held("U1")
        assert not snapshot.is_held("U2")

    @pytest.mark.asyncio
    async def test_snapshot_category_hold(self, registry, guard):
        await registry.create_hold(scope(categories=["exports"]), REASON, "legal")

        snapshot = await guard.snapshot("exports")

        assert snapshot.category_held
        assert snapshot.is_held("anyone")
        assert not (await guard.snapshot("uploads")).category_held
