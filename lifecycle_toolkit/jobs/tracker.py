"""
Purge job tracking and per-category run locks.

Job state lives in the database so dashboards, schedulers and other worker
processes all see the same thing. Each transition is a compare-and-set on the
stored status, which makes every edge fire at most once even when two
workers race.

The "run in progress" marker for a category is a row in
``purge_category_locks`` keyed by category. Because it is a database row and
not process memory, it survives restarts and is shared by every worker.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.exc import IntegrityError

from ..database import Base, Database
from ..exceptions import InvalidJobTransition, JobConflictError, JobNotFoundError
from .models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CategoryMetrics,
    JobStatus,
    JobTrigger,
    PurgeJob,
)

logger = logging.getLogger(__name__)


class PurgeJobDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for purge jobs."""

    __tablename__ = "purge_jobs"

    id = Column(String(50), primary_key=True)
    trigger = Column(String(20), nullable=False, index=True)
    target_categories = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    actor = Column(String(100), nullable=False)

    records_scanned = Column(Integer, nullable=False, default=0)
    records_deleted = Column(Integer, nullable=False, default=0)
    records_archived = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    storage_bytes_freed = Column(BigInteger, nullable=False, default=0)
    category_metrics = Column(JSON, nullable=True)

    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True, index=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)


class CategoryLockDB(Base):  # type: ignore[valid-type,misc]
    """Durable marker that a destructive run for a category is in flight."""

    __tablename__ = "purge_category_locks"

    category = Column(String(100), primary_key=True)
    job_id = Column(String(50), nullable=False, index=True)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class JobTracker:
    """Records the lifecycle and metrics of purge runs."""

    def __init__(self, database: Database, lock_ttl: timedelta = timedelta(hours=4)):
        """
        Initialize the tracker.

        Args:
            database: Lifecycle database
            lock_ttl: Age after which a category lock counts as abandoned
        """
        self.database = database
        self.lock_ttl = lock_ttl

    def _db_to_job(self, row: PurgeJobDB) -> PurgeJob:
        metrics = {
            name: CategoryMetrics.model_validate(value)
            for name, value in (row.category_metrics or {}).items()
        }
        return PurgeJob(
            id=row.id,
            trigger=row.trigger,
            target_categories=row.target_categories or [],
            status=row.status,
            actor=row.actor,
            records_scanned=row.records_scanned,
            records_deleted=row.records_deleted,
            records_archived=row.records_archived,
            records_failed=row.records_failed,
            storage_bytes_freed=row.storage_bytes_freed,
            category_metrics=metrics,
            cancel_requested=row.cancel_requested,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            error_message=row.error_message,
        )

    @staticmethod
    def _metric_values(metrics: Dict[str, CategoryMetrics]) -> Dict[str, Any]:
        totals = PurgeJob()
        totals.apply_metrics(metrics)
        return {
            "records_scanned": totals.records_scanned,
            "records_deleted": totals.records_deleted,
            "records_archived": totals.records_archived,
            "records_failed": totals.records_failed,
            "storage_bytes_freed": totals.storage_bytes_freed,
            "category_metrics": {
                name: m.model_dump(mode="json") for name, m in metrics.items()
            },
        }

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_job(
        self,
        trigger: JobTrigger,
        categories: Iterable[str],
        actor: str = "system",
        job_id: Optional[str] = None,
    ) -> PurgeJob:
        """Create a job in the ``pending`` state."""
        job = PurgeJob(
            trigger=trigger,
            target_categories=sorted(set(categories)),
            actor=actor,
        )
        if job_id is not None:
            job.id = job_id

        with self.database.session() as session:
            session.add(
                PurgeJobDB(
                    id=job.id,
                    trigger=job.trigger,
                    target_categories=job.target_categories,
                    status=job.status,
                    actor=job.actor,
                    records_scanned=0,
                    records_deleted=0,
                    records_archived=0,
                    records_failed=0,
                    storage_bytes_freed=0,
                    category_metrics={},
                    cancel_requested=False,
                    created_at=job.created_at,
                )
            )
            session.commit()

        return job

    async def _transition(
        self, job_id: str, target: JobStatus, values: Optional[Dict[str, Any]] = None
    ) -> PurgeJob:
        """
        Move a job along one edge of the state machine.

        The update only matches rows still in an allowed source state, so a
        second attempt at the same edge finds nothing to update and fails.
        """
        sources = [s for s, targets in ALLOWED_TRANSITIONS.items() if target.value in targets]

        with self.database.session() as session:
            updated = (
                session.query(PurgeJobDB)
                .filter(PurgeJobDB.id == job_id, PurgeJobDB.status.in_(sources))
                .update({"status": target.value, **(values or {})}, synchronize_session=False)
            )
            session.commit()

            row = session.get(PurgeJobDB, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if updated != 1:
                raise InvalidJobTransition(job_id, row.status, target.value)

            session.refresh(row)
            job = self._db_to_job(row)

        logger.info("Purge job %s -> %s", job_id, target.value)
        return job

    async def start(self, job_id: str) -> PurgeJob:
        return await self._transition(
            job_id, JobStatus.RUNNING, {"started_at": datetime.utcnow()}
        )

    async def complete(
        self, job_id: str, metrics: Dict[str, CategoryMetrics]
    ) -> PurgeJob:
        values = self._metric_values(metrics)
        values["completed_at"] = datetime.utcnow()
        return await self._transition(job_id, JobStatus.COMPLETED, values)

    async def fail(
        self,
        job_id: str,
        error_message: str,
        metrics: Optional[Dict[str, CategoryMetrics]] = None,
    ) -> PurgeJob:
        values = self._metric_values(metrics) if metrics is not None else {}
        values["completed_at"] = datetime.utcnow()
        values["error_message"] = error_message
        return await self._transition(job_id, JobStatus.FAILED, values)

    async def cancel(
        self, job_id: str, metrics: Dict[str, CategoryMetrics]
    ) -> PurgeJob:
        values = self._metric_values(metrics)
        values["completed_at"] = datetime.utcnow()
        values["error_message"] = "Cancelled by operator request"
        return await self._transition(job_id, JobStatus.CANCELLED, values)

    async def record_progress(
        self, job_id: str, metrics: Dict[str, CategoryMetrics]
    ) -> None:
        """Publish intermediate counters of a running job and extend its locks."""
        with self.database.session() as session:
            session.query(PurgeJobDB).filter(
                PurgeJobDB.id == job_id, PurgeJobDB.status == JobStatus.RUNNING.value
            ).update(self._metric_values(metrics), synchronize_session=False)
            session.query(CategoryLockDB).filter(CategoryLockDB.job_id == job_id).update(
                {"expires_at": datetime.utcnow() + self.lock_ttl},
                synchronize_session=False,
            )
            session.commit()

    async def request_cancel(self, job_id: str) -> PurgeJob:
        """
        Ask a pending or running job to stop after its current batch.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobTransition: If the job already finished
        """
        with self.database.session() as session:
            row = session.get(PurgeJobDB, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status in TERMINAL_STATUSES:
                raise InvalidJobTransition(job_id, row.status, JobStatus.CANCELLED.value)
            row.cancel_requested = True
            session.commit()
            job = self._db_to_job(row)

        logger.info("Cancellation requested for purge job %s", job_id)
        return job

    async def is_cancel_requested(self, job_id: str) -> bool:
        with self.database.session() as session:
            row = session.get(PurgeJobDB, job_id)
            return bool(row is not None and row.cancel_requested)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> PurgeJob:
        with self.database.session() as session:
            row = session.get(PurgeJobDB, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return self._db_to_job(row)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        category: Optional[str] = None,
        trigger: Optional[JobTrigger] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[PurgeJob]:
        """
        List jobs, newest first.

        Args:
            status: Only jobs in this state
            category: Only jobs that targeted this category
            trigger: Only jobs started this way
            since: Only jobs created at or after this time
            until: Only jobs created at or before this time
            limit: Maximum number of jobs
        """
        with self.database.session() as session:
            q = session.query(PurgeJobDB)
            if status is not None:
                q = q.filter(PurgeJobDB.status == JobStatus(status).value)
            if trigger is not None:
                q = q.filter(PurgeJobDB.trigger == JobTrigger(trigger).value)
            if since is not None:
                q = q.filter(PurgeJobDB.created_at >= since)
            if until is not None:
                q = q.filter(PurgeJobDB.created_at <= until)
            q = q.order_by(PurgeJobDB.created_at.desc())

            jobs = []
            for row in q.all():
                if category is not None and category not in (row.target_categories or []):
                    continue
                jobs.append(self._db_to_job(row))
                if len(jobs) >= limit:
                    break
            return jobs

    async def get_last_completed(
        self,
        category: Optional[str] = None,
        before: Optional[datetime] = None,
        include_dry_run: bool = False,
    ) -> Optional[PurgeJob]:
        """
        Most recently completed job, optionally for one category.

        Dry runs are ignored unless ``include_dry_run`` is set, since they
        do not enforce retention.
        """
        with self.database.session() as session:
            q = session.query(PurgeJobDB).filter(
                PurgeJobDB.status == JobStatus.COMPLETED.value
            )
            if not include_dry_run:
                q = q.filter(PurgeJobDB.trigger != JobTrigger.DRY_RUN.value)
            if before is not None:
                q = q.filter(PurgeJobDB.completed_at <= before)
            q = q.order_by(PurgeJobDB.completed_at.desc())

            for row in q.all():
                if category is None or category in (row.target_categories or []):
                    return self._db_to_job(row)
        return None

    # ------------------------------------------------------------------
    # Category locks
    # ------------------------------------------------------------------

    async def acquire_locks(self, categories: Iterable[str], job_id: str) -> None:
        """
        Mark categories as busy for a job.

        All categories are locked or none is.

        Raises:
            JobConflictError: If any category already has a live lock
        """
        now = datetime.utcnow()
        with self.database.session() as session:
            for category in sorted(set(categories)):
                existing = session.get(CategoryLockDB, category)
                if existing is not None:
                    if existing.expires_at > now:
                        session.rollback()
                        raise JobConflictError(category, existing.job_id)
                    logger.warning(
                        "Taking over expired lock on '%s' held by job %s since %s",
                        category,
                        existing.job_id,
                        existing.acquired_at,
                    )
                    session.delete(existing)
                    session.flush()

                session.add(
                    CategoryLockDB(
                        category=category,
                        job_id=job_id,
                        acquired_at=now,
                        expires_at=now + self.lock_ttl,
                    )
                )
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    raise JobConflictError(category)

            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise JobConflictError(", ".join(sorted(set(categories))))

    async def release_locks(self, job_id: str) -> None:
        with self.database.session() as session:
            session.query(CategoryLockDB).filter(CategoryLockDB.job_id == job_id).delete(
                synchronize_session=False
            )
            session.commit()

    async def lock_holder(self, category: str) -> Optional[str]:
        """Job id holding a live lock on the category, if any."""
        with self.database.session() as session:
            row = session.get(CategoryLockDB, category)
            if row is None or row.expires_at <= datetime.utcnow():
                return None
            return row.job_id

    async def is_running(self, category: str) -> bool:
        return await self.lock_holder(category) is not None

    async def running_categories(self) -> Dict[str, str]:
        """Categories with a live lock, mapped to the job holding it."""
        now = datetime.utcnow()
        with self.database.session() as session:
            rows = session.query(CategoryLockDB).filter(CategoryLockDB.expires_at > now).all()
            return {row.category: row.job_id for row in rows}
