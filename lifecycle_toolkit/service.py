"""
Operator and scheduler surface of the data lifecycle engine.

``LifecycleService`` wires the stores, guard, executor and reporter onto one
database and exposes the operations dashboards, schedulers and the CLI use.
Administrative changes (holds, policies, cancellations) are audited here.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .audit_trail import AuditAction, AuditEntry, AuditLog, AuditQuery, AuditSpool
from .compliance import ComplianceReport, ComplianceReporter, ComplianceReportStore
from .config import LifecycleConfig, get_config
from .database import Database
from .exceptions import HoldViolationAttempt, JobConflictError, LifecycleError
from .jobs import JobStatus, JobTracker, JobTrigger, PurgeJob
from .legal_hold import HoldScope, HoldStatus, LegalHold, LegalHoldGuard, LegalHoldRegistry
from .policies import DeletionMode, PolicyStore, RetentionPolicy
from .purge import CategoryRegistry, ForcePurgeResult, PurgeExecutor, RunOptions

logger = logging.getLogger(__name__)


class CategoryStatus(BaseModel):
    """Retention state of one category with an active policy."""

    category: str
    policy_id: str
    retention_period: timedelta
    deletion_mode: str
    archive_before_delete: bool = False
    cutoff: datetime
    pending_records: Optional[int] = Field(
        None, description="Records a run would purge now (None if not countable)"
    )
    registered: bool = True
    last_completed_at: Optional[datetime] = None
    last_job_id: Optional[str] = None
    running_job_id: Optional[str] = None


class PurgeStatus(BaseModel):
    """Snapshot of retention enforcement for dashboards."""

    generated_at: datetime = Field(default_factory=datetime.utcnow)
    categories: List[CategoryStatus] = Field(default_factory=list)
    running: Dict[str, str] = Field(
        default_factory=dict, description="Busy categories mapped to their job"
    )
    recent_jobs: List[PurgeJob] = Field(default_factory=list)
    next_scheduled_run: datetime

    @property
    def total_pending(self) -> int:
        return sum(c.pending_records or 0 for c in self.categories)


def next_run_at(now: datetime, hour: int) -> datetime:
    """Next occurrence of ``hour``:00 UTC strictly after ``now``."""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class LifecycleService:
    """Facade over policies, holds, purge runs, audit and compliance reports."""

    def __init__(
        self,
        database: Database,
        registry: Optional[CategoryRegistry] = None,
        config: Optional[LifecycleConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the service.

        Args:
            database: Database holding the engine's tables
            registry: Purgeable categories
            config: Engine configuration (global config if omitted)
            clock: Current UTC time (for tests)
        """
        self.config = config or get_config()
        self.database = database
        self.registry = registry if registry is not None else CategoryRegistry()
        self.clock = clock or datetime.utcnow

        self.policy_store = PolicyStore(database)
        self.hold_registry = LegalHoldRegistry(database)
        self.guard = LegalHoldGuard(self.hold_registry)
        self.audit_log = AuditLog(database)
        self.tracker = JobTracker(database, lock_ttl=self.config.lock_ttl)
        self.spool = AuditSpool(self.config.audit_spool_path)
        self.report_store = ComplianceReportStore(database)

        self.executor = PurgeExecutor(
            policy_store=self.policy_store,
            guard=self.guard,
            audit_log=self.audit_log,
            tracker=self.tracker,
            registry=self.registry,
            config=self.config,
            spool=self.spool,
            clock=self.clock,
        )
        self.reporter = ComplianceReporter(
            audit_log=self.audit_log,
            tracker=self.tracker,
            policy_store=self.policy_store,
            hold_registry=self.hold_registry,
            config=self.config,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[LifecycleConfig] = None,
        registry: Optional[CategoryRegistry] = None,
    ) -> "LifecycleService":
        """Build a service on the configured database and category factory."""
        config = config or get_config()
        registry = registry if registry is not None else CategoryRegistry()
        if config.category_factory:
            registry.load_factory(config.category_factory)
        return cls(Database(config.database_url), registry=registry, config=config)

    def close(self) -> None:
        self.database.dispose()

    async def _audit_admin(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: str,
        actor: str,
        category: Optional[str] = None,
        policy_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return await self.audit_log.append(
            AuditEntry(
                action=action.value,
                resource_type=resource_type,
                resource_id=resource_id,
                actor=actor,
                category=category,
                policy_id=policy_id,
                metadata=metadata or {},
            )
        )

    # ------------------------------------------------------------------
    # Purge runs
    # ------------------------------------------------------------------

    async def trigger_run(
        self,
        categories: Optional[List[str]] = None,
        dry_run: bool = False,
        actor: str = "system",
        trigger: JobTrigger = JobTrigger.MANUAL,
    ) -> PurgeJob:
        """
        Run a purge now.

        Raises:
            JobConflictError: If a target category is already being purged
        """
        options = RunOptions(
            categories=categories, dry_run=dry_run, trigger=trigger, actor=actor
        )
        return await self.executor.run(options)

    async def get_job_status(self, job_id: str) -> PurgeJob:
        return await self.tracker.get_job(job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        category: Optional[str] = None,
        trigger: Optional[JobTrigger] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[PurgeJob]:
        return await self.tracker.list_jobs(
            status=status,
            category=category,
            trigger=trigger,
            since=since,
            until=until,
            limit=limit,
        )

    async def cancel_job(self, job_id: str, actor: str = "system") -> PurgeJob:
        """
        Request cancellation of a pending or running job.

        The job stops after its current page and ends ``cancelled``.
        """
        job = await self.tracker.request_cancel(job_id)
        await self._audit_admin(
            AuditAction.JOB_CANCEL_REQUESTED,
            "purge_job",
            job_id,
            actor,
            metadata={
                "job_id": job_id,
                "status": job.status,
                "categories": job.target_categories,
            },
        )
        return job

    async def force_purge(
        self, category: str, record_ids: List[str], reason: str, actor: str
    ) -> ForcePurgeResult:
        """
        Purge named records now.

        A request touching held records is rejected as a whole; the result
        then has ``rejected`` set and lists the held ids.
        """
        try:
            return await self.executor.force_purge(category, record_ids, reason, actor)
        except HoldViolationAttempt as e:
            return ForcePurgeResult(
                category=category,
                requested_ids=[str(i) for i in record_ids],
                held_ids=e.record_ids,
                rejected=True,
            )

    async def run_scheduled(
        self, now: Optional[datetime] = None, actor: str = "scheduler"
    ) -> List[PurgeJob]:
        """
        Purge every category whose cadence has elapsed.

        Each due category gets its own job. Categories with a run in flight
        are skipped until the next tick.

        Args:
            now: Reference time (defaults to the service clock)
            actor: Recorded as the actor of the jobs

        Returns:
            Jobs started by this tick
        """
        now = now or self.clock()
        jobs = []

        for policy in await self.policy_store.active_policies():
            category = policy.data_category
            cadence = policy.purge_cadence or self.config.cadence_for(policy.retention_period)

            last = await self.tracker.get_last_completed(category)
            if last is not None and last.completed_at and last.completed_at + cadence > now:
                continue

            if await self.tracker.is_running(category):
                logger.info("Scheduled purge of '%s' skipped, a run is in progress", category)
                continue

            try:
                job = await self.executor.run(
                    RunOptions(
                        categories=[category], trigger=JobTrigger.SCHEDULED, actor=actor
                    )
                )
            except JobConflictError as e:
                logger.info("Scheduled purge of '%s' skipped: %s", category, e)
                continue
            jobs.append(job)

        logger.info("Scheduled tick started %d purge job(s)", len(jobs))
        return jobs

    async def get_purge_status(self) -> PurgeStatus:
        """
        Current retention state: per policy cutoff, pending records and last
        completed job, busy categories, recent jobs and the next daily run.
        """
        now = self.clock()
        running = await self.tracker.running_categories()
        statuses = []

        for policy in await self.policy_store.active_policies():
            category = self.registry.get(policy.data_category)
            cutoff = policy.cutoff(now)
            pending: Optional[int] = None
            if category is not None:
                try:
                    holds = await self.guard.snapshot(policy.data_category)
                    pending = await category.count_eligible(cutoff, holds)
                except LifecycleError as e:
                    logger.warning(
                        "Cannot count pending records of '%s': %s", policy.data_category, e
                    )

            last = await self.tracker.get_last_completed(policy.data_category)
            statuses.append(
                CategoryStatus(
                    category=policy.data_category,
                    policy_id=policy.id,
                    retention_period=policy.retention_period,
                    deletion_mode=policy.deletion_mode,
                    archive_before_delete=policy.archive_before_delete,
                    cutoff=cutoff,
                    pending_records=pending,
                    registered=category is not None,
                    last_completed_at=last.completed_at if last else None,
                    last_job_id=last.id if last else None,
                    running_job_id=running.get(policy.data_category),
                )
            )

        return PurgeStatus(
            generated_at=now,
            categories=statuses,
            running=running,
            recent_jobs=await self.tracker.list_jobs(limit=10),
            next_scheduled_run=next_run_at(now, self.config.scheduled_run_hour_utc),
        )

    # ------------------------------------------------------------------
    # Legal holds
    # ------------------------------------------------------------------

    async def create_hold(
        self,
        reason: str,
        created_by: str,
        user_ids: Optional[Iterable[str]] = None,
        data_categories: Optional[Iterable[str]] = None,
        allow_global: bool = False,
    ) -> LegalHold:
        """
        Place a legal hold.

        An empty ``user_ids`` holds every owner, an empty ``data_categories``
        holds every category. Leaving both empty is only accepted with
        ``allow_global=True``.
        """
        scope = HoldScope(
            user_ids=frozenset(user_ids or []),
            data_categories=frozenset(data_categories or []),
        )
        hold = await self.hold_registry.create_hold(
            scope, reason, created_by, allow_global=allow_global
        )
        await self._audit_admin(
            AuditAction.LEGAL_HOLD_CREATED,
            "legal_hold",
            hold.id,
            created_by,
            metadata={
                "reason": hold.reason,
                "user_ids": sorted(scope.user_ids),
                "data_categories": sorted(scope.data_categories),
                "global": scope.is_global,
            },
        )
        return hold

    async def release_hold(self, hold_id: str, released_by: str) -> LegalHold:
        hold = await self.hold_registry.release_hold(hold_id, released_by)
        await self._audit_admin(
            AuditAction.LEGAL_HOLD_RELEASED,
            "legal_hold",
            hold.id,
            released_by,
            metadata={"held_since": hold.created_at.isoformat()},
        )
        return hold

    async def list_holds(self, status: Optional[HoldStatus] = None) -> List[LegalHold]:
        return await self.hold_registry.list_holds(status)

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    async def set_policy(
        self,
        category: str,
        retention_period: timedelta,
        deletion_mode: DeletionMode = DeletionMode.HARD,
        archive_before_delete: bool = False,
        archive_target: Optional[str] = None,
        purge_cadence: Optional[timedelta] = None,
        actor: str = "system",
    ) -> RetentionPolicy:
        """Make a new policy the active one for its category."""
        previous = await self.policy_store.active_policy(category)
        policy = RetentionPolicy(
            data_category=category,
            retention_period=retention_period,
            deletion_mode=deletion_mode,
            archive_before_delete=archive_before_delete,
            archive_target=archive_target,
            purge_cadence=purge_cadence,
        )
        stored = await self.policy_store.replace_policy(policy)
        await self._audit_admin(
            AuditAction.POLICY_CHANGED,
            "retention_policy",
            stored.id,
            actor,
            category=category,
            policy_id=stored.id,
            metadata={
                "previous_policy_id": previous.id if previous else None,
                "retention_seconds": retention_period.total_seconds(),
                "deletion_mode": stored.deletion_mode,
                "archive_before_delete": archive_before_delete,
                "archive_target": archive_target,
            },
        )
        return stored

    async def deactivate_policy(self, policy_id: str, actor: str = "system") -> RetentionPolicy:
        policy = await self.policy_store.deactivate_policy(policy_id)
        await self._audit_admin(
            AuditAction.POLICY_DEACTIVATED,
            "retention_policy",
            policy.id,
            actor,
            category=policy.data_category,
            policy_id=policy.id,
        )
        return policy

    async def list_policies(self, include_inactive: bool = False) -> List[RetentionPolicy]:
        return await self.policy_store.list_policies(include_inactive=include_inactive)

    # ------------------------------------------------------------------
    # Audit and compliance
    # ------------------------------------------------------------------

    async def search_audit(self, query: AuditQuery) -> List[AuditEntry]:
        return await self.audit_log.query(query)

    async def get_compliance_report(
        self,
        period_start: datetime,
        period_end: datetime,
        generated_by: str = "system",
        regenerate: bool = False,
    ) -> ComplianceReport:
        """
        Stored report for the period, generating and storing one if needed.

        A period that has not ended yet is always generated fresh and never
        stored, since later activity would change it.

        Args:
            period_start: Report period start
            period_end: Report period end
            generated_by: Requesting user or process
            regenerate: Ignore any stored report
        """
        closed = period_end <= self.clock()
        if closed and not regenerate:
            stored = await self.report_store.find(period_start, period_end)
            if stored is not None:
                return stored

        report = await self.reporter.generate(period_start, period_end, generated_by)
        if not closed:
            return report
        return await self.report_store.save(report)
