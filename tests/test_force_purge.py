"""Tests for forced purges of named records."""

from datetime import timedelta

import pytest

from lifecycle_toolkit.audit_trail import AuditQuery
from lifecycle_toolkit.exceptions import (
    ConfigurationError,
    HoldViolationAttempt,
    JobConflictError,
)
from lifecycle_toolkit.jobs import JobStatus, JobTrigger


@pytest.fixture
def seeded(exports):
    exports.seed("fresh-1", timedelta(hours=1), owner_id="U1")
    exports.seed("fresh-2", timedelta(hours=2), owner_id="U2")
    exports.seed("fresh-3", timedelta(hours=3), owner_id="U3")
    return exports


class TestForcePurge:
    """Force purge ignores age but never legal holds."""

    @pytest.mark.asyncio
    async def test_purges_records_regardless_of_age(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))

        result = await service.force_purge(
            "exports", ["fresh-1", "fresh-2"], "User erasure request #881", "ops"
        )

        assert not result.rejected
        assert result.purged_ids == ["fresh-1", "fresh-2"]
        assert result.failed_ids == []
        assert seeded.remaining == {"fresh-3"}

        job = result.job
        assert job.trigger == JobTrigger.FORCE.value
        assert job.status == JobStatus.COMPLETED.value
        assert job.records_deleted == 2

        audited = await service.audit_log.query(AuditQuery(job_ids=[job.id]))
        assert len(audited) == 2
        assert all(e.metadata["forced"] is True for e in audited)
        assert all(e.metadata["reason"] == "User erasure request #881" for e in audited)
        assert all(e.actor == "ops" for e in audited)

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_rejected_when_any_record_is_held(self, service, seeded):
        """Scenario C: one held record rejects the whole request."""
        await service.set_policy("exports", timedelta(days=30))
        hold = await service.create_hold("Investigation into U2 account", "legal", user_ids=["U2"])

        result = await service.force_purge(
            "exports", ["fresh-1", "fresh-2"], "User erasure request #881", "ops"
        )

        assert result.rejected
        assert result.held_ids == ["fresh-2"]
        assert result.job is None
        assert seeded.remaining == {"fresh-1", "fresh-2", "fresh-3"}

        rejected = await service.audit_log.query(AuditQuery(actions=["force_purge_rejected"]))
        assert len(rejected) == 1
        entry = rejected[0]
        assert entry.success is False
        assert entry.metadata["requested_ids"] == ["fresh-1", "fresh-2"]
        assert entry.metadata["held_ids"] == ["fresh-2"]
        assert entry.metadata["hold_ids"] == [hold.id]

        deletions = await service.audit_log.query(AuditQuery(categories=["exports"]))
        assert all(e.operation is None for e in deletions)

    @pytest.mark.asyncio
    async def test_executor_raises_hold_violation(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))
        await service.create_hold("Investigation into U1 account", "legal", user_ids=["U1"])

        with pytest.raises(HoldViolationAttempt) as exc_info:
            await service.executor.force_purge(
                "exports", ["fresh-1"], "User erasure request #881", "ops"
            )

        assert exc_info.value.record_ids == ["fresh-1"]

    @pytest.mark.asyncio
    async def test_missing_ids_are_reported(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))

        result = await service.force_purge(
            "exports", ["fresh-3", "nope"], "Cleanup after incident 42", "ops"
        )

        assert result.purged_ids == ["fresh-3"]
        assert result.missing_ids == ["nope"]

    @pytest.mark.asyncio
    async def test_delete_failure_is_reported(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))
        seeded.fail_delete["fresh-1"] = 10

        result = await service.force_purge(
            "exports", ["fresh-1", "fresh-2"], "Cleanup after incident 42", "ops"
        )

        assert result.purged_ids == ["fresh-2"]
        assert result.failed_ids == ["fresh-1"]
        assert result.job.records_failed == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "   ", "too short"])
    async def test_requires_a_reason(self, service, seeded, reason):
        await service.set_policy("exports", timedelta(days=30))

        with pytest.raises(ValueError, match="reason"):
            await service.force_purge("exports", ["fresh-1"], reason, "ops")

    @pytest.mark.asyncio
    async def test_requires_record_ids(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))

        with pytest.raises(ValueError, match="record id"):
            await service.force_purge("exports", [], "Cleanup after incident 42", "ops")

    @pytest.mark.asyncio
    async def test_requires_active_policy(self, service, seeded):
        with pytest.raises(ConfigurationError, match="No active retention policy"):
            await service.force_purge(
                "exports", ["fresh-1"], "Cleanup after incident 42", "ops"
            )

    @pytest.mark.asyncio
    async def test_requires_registered_store(self, service):
        await service.set_policy("invoices", timedelta(days=30))

        with pytest.raises(ConfigurationError, match="No purgeable store"):
            await service.force_purge(
                "invoices", ["inv-1"], "Cleanup after incident 42", "ops"
            )

    @pytest.mark.asyncio
    async def test_conflicts_with_running_purge(self, service, seeded):
        await service.set_policy("exports", timedelta(days=30))
        await service.tracker.acquire_locks(["exports"], "running-job")

        with pytest.raises(JobConflictError):
            await service.force_purge(
                "exports", ["fresh-1"], "Cleanup after incident 42", "ops"
            )

        assert seeded.remaining == {"fresh-1", "fresh-2", "fresh-3"}
