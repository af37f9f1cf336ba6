"""
Tests for purge job tracking.

Covers the job state machine, cancellation requests, job queries and the
per-category locks that keep destructive runs exclusive.
"""

from datetime import datetime, timedelta

import pytest

from lifecycle_toolkit.exceptions import (
    InvalidJobTransition,
    JobConflictError,
    JobNotFoundError,
)
from lifecycle_toolkit.jobs import (
    CategoryLockDB,
    CategoryMetrics,
    JobStatus,
    JobTracker,
    JobTrigger,
    PurgeJob,
)


@pytest.fixture
def tracker(database):
    return JobTracker(database, lock_ttl=timedelta(minutes=30))


def metrics(**counts):
    return {"exports": CategoryMetrics(**counts)}


class TestPurgeJobModel:
    def test_defaults(self):
        job = PurgeJob()
        assert job.status == JobStatus.PENDING.value
        assert job.trigger == JobTrigger.MANUAL.value
        assert not job.is_terminal
        assert job.duration is None

    def test_apply_metrics_sums_categories(self):
        job = PurgeJob()
        job.apply_metrics(
            {
                "exports": CategoryMetrics(records_scanned=10, records_deleted=8, records_failed=2),
                "uploads": CategoryMetrics(
                    records_scanned=5, records_deleted=5, storage_bytes_freed=512
                ),
            }
        )
        assert job.records_scanned == 15
        assert job.records_deleted == 13
        assert job.records_failed == 2
        assert job.storage_bytes_freed == 512
        assert job.failure_rate == pytest.approx(2 / 15 * 100)

    def test_failure_rate_without_records(self):
        assert PurgeJob().failure_rate == 0.0


class TestJobLifecycle:
    """State machine transitions."""

    @pytest.mark.asyncio
    async def test_happy_path(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["uploads", "exports"], actor="ops")
        assert job.target_categories == ["exports", "uploads"]

        running = await tracker.start(job.id)
        assert running.status == JobStatus.RUNNING.value
        assert running.started_at is not None

        done = await tracker.complete(
            job.id, metrics(records_scanned=3, records_deleted=3, storage_bytes_freed=30)
        )
        assert done.status == JobStatus.COMPLETED.value
        assert done.is_terminal
        assert done.records_deleted == 3
        assert done.storage_bytes_freed == 30
        assert done.category_metrics["exports"].records_scanned == 3
        assert done.duration is not None

    @pytest.mark.asyncio
    async def test_terminal_job_cannot_move(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)
        await tracker.complete(job.id, metrics())

        with pytest.raises(InvalidJobTransition) as exc_info:
            await tracker.fail(job.id, "late failure")

        assert exc_info.value.current == JobStatus.COMPLETED.value
        assert (await tracker.get_job(job.id)).status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)

        with pytest.raises(InvalidJobTransition):
            await tracker.start(job.id)

    @pytest.mark.asyncio
    async def test_pending_job_cannot_complete(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])

        with pytest.raises(InvalidJobTransition):
            await tracker.complete(job.id, metrics())

    @pytest.mark.asyncio
    async def test_pending_job_can_fail(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])

        failed = await tracker.fail(job.id, "policy store unreachable")

        assert failed.status == JobStatus.FAILED.value
        assert failed.error_message == "policy store unreachable"

    @pytest.mark.asyncio
    async def test_unknown_job(self, tracker):
        with pytest.raises(JobNotFoundError):
            await tracker.start("missing")
        with pytest.raises(JobNotFoundError):
            await tracker.get_job("missing")

    @pytest.mark.asyncio
    async def test_record_progress_only_while_running(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)
        await tracker.record_progress(job.id, metrics(records_scanned=7))
        assert (await tracker.get_job(job.id)).records_scanned == 7

        await tracker.complete(job.id, metrics(records_scanned=9))
        await tracker.record_progress(job.id, metrics(records_scanned=1))
        assert (await tracker.get_job(job.id)).records_scanned == 9


class TestCancellation:
    @pytest.mark.asyncio
    async def test_request_and_cancel(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)
        assert not await tracker.is_cancel_requested(job.id)

        flagged = await tracker.request_cancel(job.id)
        assert flagged.cancel_requested
        assert await tracker.is_cancel_requested(job.id)

        cancelled = await tracker.cancel(job.id, metrics(records_deleted=1))
        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.error_message == "Cancelled by operator request"

    @pytest.mark.asyncio
    async def test_cannot_cancel_finished_job(self, tracker):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)
        await tracker.complete(job.id, metrics())

        with pytest.raises(InvalidJobTransition):
            await tracker.request_cancel(job.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, tracker):
        with pytest.raises(JobNotFoundError):
            await tracker.request_cancel("missing")


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_jobs_filters(self, tracker):
        first = await tracker.create_job(JobTrigger.SCHEDULED, ["exports"])
        second = await tracker.create_job(JobTrigger.DRY_RUN, ["uploads"])
        await tracker.start(second.id)

        everything = await tracker.list_jobs()
        assert {j.id for j in everything} == {first.id, second.id}

        assert [j.id for j in await tracker.list_jobs(category="exports")] == [first.id]
        assert [j.id for j in await tracker.list_jobs(status=JobStatus.RUNNING)] == [second.id]
        assert [j.id for j in await tracker.list_jobs(trigger=JobTrigger.DRY_RUN)] == [second.id]
        assert len(await tracker.list_jobs(limit=1)) == 1
        assert await tracker.list_jobs(since=datetime.utcnow() + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_last_completed_ignores_dry_runs(self, tracker):
        real = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(real.id)
        await tracker.complete(real.id, metrics())

        dry = await tracker.create_job(JobTrigger.DRY_RUN, ["exports"])
        await tracker.start(dry.id)
        await tracker.complete(dry.id, metrics())

        last = await tracker.get_last_completed("exports")
        assert last.id == real.id
        with_dry = await tracker.get_last_completed("exports", include_dry_run=True)
        assert with_dry.id == dry.id
        assert await tracker.get_last_completed("uploads") is None


class TestCategoryLocks:
    """One destructive run per category at a time."""

    @pytest.mark.asyncio
    async def test_second_acquire_conflicts(self, tracker):
        await tracker.acquire_locks(["exports"], "job-1")

        with pytest.raises(JobConflictError) as exc_info:
            await tracker.acquire_locks(["exports"], "job-2")

        assert exc_info.value.holder_job_id == "job-1"
        assert await tracker.lock_holder("exports") == "job-1"

    @pytest.mark.asyncio
    async def test_all_or_nothing(self, tracker):
        await tracker.acquire_locks(["uploads"], "job-1")

        with pytest.raises(JobConflictError):
            await tracker.acquire_locks(["exports", "uploads"], "job-2")

        assert not await tracker.is_running("exports")
        assert await tracker.running_categories() == {"uploads": "job-1"}

    @pytest.mark.asyncio
    async def test_release_frees_categories(self, tracker):
        await tracker.acquire_locks(["exports", "uploads"], "job-1")
        assert await tracker.running_categories() == {"exports": "job-1", "uploads": "job-1"}

        await tracker.release_locks("job-1")

        assert await tracker.running_categories() == {}
        await tracker.acquire_locks(["exports"], "job-2")
        assert await tracker.lock_holder("exports") == "job-2"

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, tracker, database):
        await tracker.acquire_locks(["exports"], "crashed-job")
        with database.session() as session:
            lock = session.get(CategoryLockDB, "exports")
            lock.expires_at = datetime.utcnow() - timedelta(minutes=1)
            session.commit()

        assert not await tracker.is_running("exports")
        await tracker.acquire_locks(["exports"], "job-2")
        assert await tracker.lock_holder("exports") == "job-2"

    @pytest.mark.asyncio
    async def test_progress_extends_lock(self, tracker, database):
        job = await tracker.create_job(JobTrigger.MANUAL, ["exports"])
        await tracker.start(job.id)
        await tracker.acquire_locks(["exports"], job.id)
        with database.session() as session:
            lock = session.get(CategoryLockDB, "exports")
            lock.expires_at = datetime.utcnow() + timedelta(seconds=5)
            session.commit()

        await tracker.record_progress(job.id, metrics(records_scanned=1))

        with database.session() as session:
            lock = session.get(CategoryLockDB, "exports")
            assert lock.expires_at > datetime.utcnow() + timedelta(minutes=20)
