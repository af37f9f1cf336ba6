"""Tests for retention policies and the policy store."""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lifecycle_toolkit.exceptions import (
    PolicyConflictError,
    PolicyNotFoundError,
    SystemUnavailableError,
)
from lifecycle_toolkit.policies import DeletionMode, PolicyStore, RetentionPolicy
from lifecycle_toolkit.policies.store import RetentionPolicyDB


@pytest.fixture
def store(database):
    return PolicyStore(database)


class TestRetentionPolicy:
    """Policy model validation."""

    def test_defaults(self):
        policy = RetentionPolicy(data_category="exports", retention_period=timedelta(days=1))
        assert policy.deletion_mode == DeletionMode.HARD.value
        assert policy.is_hard_delete
        assert policy.is_active
        assert not policy.archive_before_delete

    def test_cutoff(self):
        policy = RetentionPolicy(data_category="exports", retention_period=timedelta(hours=24))
        now = datetime(2024, 3, 2, 8, 0)
        assert policy.cutoff(now) == datetime(2024, 3, 1, 8, 0)

    @pytest.mark.parametrize("period", [timedelta(0), timedelta(hours=-1)])
    def test_retention_must_be_positive(self, period):
        with pytest.raises(ValidationError, match="greater than zero"):
            RetentionPolicy(data_category="exports", retention_period=period)

    def test_archive_requires_target(self):
        with pytest.raises(ValidationError, match="archive_target"):
            RetentionPolicy(
                data_category="exports",
                retention_period=timedelta(days=1),
                archive_before_delete=True,
            )

    def test_category_is_stripped(self):
        policy = RetentionPolicy(data_category="  exports ", retention_period=timedelta(days=1))
        assert policy.data_category == "exports"

    def test_describe(self):
        policy = RetentionPolicy(
            data_category="exports",
            retention_period=timedelta(days=7),
            deletion_mode=DeletionMode.SOFT,
            archive_before_delete=True,
            archive_target="s3://archive",
        )
        assert policy.describe() == "exports: keep 7 days, 0:00:00, soft delete, archive to s3://archive"


class TestPolicyStore:
    """Persistence and the one-active-policy rule."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        policy = await store.create_policy(
            RetentionPolicy(
                data_category="exports",
                retention_period=timedelta(hours=36),
                purge_cadence=timedelta(hours=2),
            )
        )

        stored = await store.get_policy(policy.id)
        assert stored.retention_period == timedelta(hours=36)
        assert stored.purge_cadence == timedelta(hours=2)
        assert (await store.active_policy("exports")).id == policy.id

    @pytest.mark.asyncio
    async def test_second_active_policy_conflicts(self, store):
        first = await store.create_policy(
            RetentionPolicy(data_category="exports", retention_period=timedelta(days=1))
        )

        with pytest.raises(PolicyConflictError) as exc_info:
            await store.create_policy(
                RetentionPolicy(data_category="exports", retention_period=timedelta(days=2))
            )

        assert exc_info.value.existing_policy_id == first.id

    def test_database_rejects_second_active_row(self, database):
        now = datetime(2024, 6, 1)

        def row(policy_id, is_active):
            return RetentionPolicyDB(
                id=policy_id,
                data_category="exports",
                retention_seconds=3600.0,
                deletion_mode="hard",
                archive_before_delete=False,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )

        with database.session() as session:
            session.add_all([row("p-1", True), row("p-2", False), row("p-3", False)])
            session.commit()
            session.add(row("p-4", True))
            with pytest.raises(IntegrityError):
                session.commit()

    @pytest.mark.asyncio
    async def test_concurrent_create_maps_to_conflict(self, store):
        first = await store.create_policy(
            RetentionPolicy(data_category="exports", retention_period=timedelta(days=1))
        )
        real_lookup = PolicyStore._active_row
        lookups = []

        def stale_then_real(session, category):
            # The first lookup misses the row another writer just committed
            lookups.append(category)
            return None if len(lookups) == 1 else real_lookup(session, category)

        with patch.object(PolicyStore, "_active_row", staticmethod(stale_then_real)):
            with pytest.raises(PolicyConflictError) as exc_info:
                await store.create_policy(
                    RetentionPolicy(data_category="exports", retention_period=timedelta(days=2))
                )

        assert exc_info.value.existing_policy_id == first.id
        assert (await store.active_policy("exports")).id == first.id

    @pytest.mark.asyncio
    async def test_replace_deactivates_previous(self, store):
        old = await store.create_policy(
            RetentionPolicy(data_category="exports", retention_period=timedelta(days=1))
        )

        new = await store.replace_policy(
            RetentionPolicy(data_category="exports", retention_period=timedelta(days=3))
        )

        assert (await store.active_policy("exports")).id == new.id
        assert not (await store.get_policy(old.id)).is_active
        all_policies = await store.list_policies(include_inactive=True)
        assert {p.id for p in all_policies} == {old.id, new.id}
        assert [p.id for p in await store.list_policies()] == [new.id]

    @pytest.mark.asyncio
    async def test_deactivate(self, store):
        policy = await store.create_policy(
            RetentionPolicy(data_category="exports", retention_period=timedelta(days=1))
        )

        deactivated = await store.deactivate_policy(policy.id)

        assert not deactivated.is_active
        assert await store.active_policy("exports") is None
        assert await store.active_policies() == []

    @pytest.mark.asyncio
    async def test_unknown_policy(self, store):
        with pytest.raises(PolicyNotFoundError):
            await store.get_policy("missing")
        with pytest.raises(PolicyNotFoundError):
            await store.deactivate_policy("missing")

    @pytest.mark.asyncio
    async def test_snapshot(self, store):
        for category in ("exports", "uploads", "sessions"):
            await store.create_policy(
                RetentionPolicy(data_category=category, retention_period=timedelta(days=1))
            )

        everything = await store.snapshot()
        assert set(everything) == {"exports", "uploads", "sessions"}

        some = await store.snapshot(["exports", "invoices"])
        assert set(some) == {"exports"}

    @pytest.mark.asyncio
    async def test_snapshot_unreachable(self, store):
        with patch.object(
            store.database, "session", side_effect=SQLAlchemyError("connection refused")
        ):
            with pytest.raises(SystemUnavailableError, match="unreachable"):
                await store.snapshot()
