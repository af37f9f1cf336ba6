"""
Purge executor.

The executor is the only component that performs destructive actions. All
trigger sources (scheduler, operators, tests) go through :meth:`PurgeExecutor.run`;
:meth:`PurgeExecutor.force_purge` is the only other destructive entrypoint.

For every eligible record the executor:

1. re-checks the legal hold guard,
2. archives the record if the policy asks for it and audits the archive,
3. applies the policy's deletion mode and audits the deletion.

A record counts as processed only once its audit entry is committed. The
job's deleted, archived and byte counters are read back from the audit log
when the job finishes, so they always agree with the audit trail.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..audit_trail.log import AuditLog
from ..audit_trail.models import AuditAction, AuditEntry, PurgeOperation, record_action
from ..audit_trail.spool import AuditSpool
from ..config import LifecycleConfig, get_config
from ..exceptions import (
    AuditWriteFailure,
    ConfigurationError,
    HoldViolationAttempt,
    SystemUnavailableError,
    TransientIOError,
)
from ..jobs.models import CategoryMetrics, JobTrigger, PurgeJob
from ..jobs.tracker import JobTracker
from ..legal_hold.guard import LegalHoldGuard
from ..policies.models import DeletionMode, RetentionPolicy
from ..policies.store import PolicyStore
from .categories import CategoryRegistry, PurgeableCategory, PurgeableRecord

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientIOError, AuditWriteFailure, asyncio.TimeoutError)

# Outcomes of processing a single record
PURGED = "purged"
FAILED = "failed"
HELD = "held"


class RunOptions(BaseModel):
    """Options for one purge run."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    categories: Optional[List[str]] = Field(
        None, description="Categories to purge (default: every configured category)"
    )
    dry_run: bool = Field(False, description="Only count eligible records")
    trigger: JobTrigger = Field(JobTrigger.MANUAL)
    actor: str = Field("system", min_length=1, max_length=100)

    @model_validator(mode="after")
    def align_dry_run(self) -> "RunOptions":
        if self.trigger == JobTrigger.DRY_RUN:
            self.dry_run = True
        elif self.dry_run:
            self.trigger = JobTrigger.DRY_RUN.value
        return self


class ForcePurgeResult(BaseModel):
    """Outcome of a forced purge of named records."""

    category: str
    requested_ids: List[str] = Field(default_factory=list)
    purged_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)
    missing_ids: List[str] = Field(default_factory=list)
    held_ids: List[str] = Field(default_factory=list)
    rejected: bool = False
    job: Optional[PurgeJob] = None

    @property
    def job_id(self) -> Optional[str]:
        return self.job.id if self.job else None


class PurgeExecutor:
    """Runs retention enforcement over every registered category."""

    def __init__(
        self,
        policy_store: PolicyStore,
        guard: LegalHoldGuard,
        audit_log: AuditLog,
        tracker: JobTracker,
        registry: CategoryRegistry,
        config: Optional[LifecycleConfig] = None,
        spool: Optional[AuditSpool] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the executor.

        Args:
            policy_store: Source of active retention policies
            guard: Legal hold guard consulted before every side effect
            audit_log: Sink for audit entries
            tracker: Job tracker
            registry: Purgeable categories
            config: Engine configuration (global config if omitted)
            spool: Holding area for audit entries that could not be committed
            clock: Current UTC time (for tests)
        """
        self.policy_store = policy_store
        self.guard = guard
        self.audit_log = audit_log
        self.tracker = tracker
        self.registry = registry
        self.config = config or get_config()
        self.spool = spool
        self.clock = clock or datetime.utcnow

    # ------------------------------------------------------------------
    # Scheduled and manual runs
    # ------------------------------------------------------------------

    async def run(self, options: Optional[RunOptions] = None) -> PurgeJob:
        """
        Execute a purge run.

        Args:
            options: Which categories, trigger and actor; dry run flag

        Returns:
            The finished job

        Raises:
            JobConflictError: If a target category already has a run in
                flight (no job is created)
        """
        options = options or RunOptions()
        dry_run = options.dry_run
        # An empty list means every category, same as None
        requested = sorted(set(options.categories or []))

        policies: Dict[str, RetentionPolicy] = {}
        snapshot_error: Optional[SystemUnavailableError] = None
        try:
            policies = await self.policy_store.snapshot(requested or None)
        except SystemUnavailableError as e:
            snapshot_error = e

        if requested:
            targets = requested
        else:
            targets = sorted(set(self.registry.names()) | set(policies))

        job_id = str(uuid.uuid4())
        if not dry_run:
            await self.tracker.acquire_locks(targets, job_id)

        try:
            job = await self.tracker.create_job(
                options.trigger, targets, actor=options.actor, job_id=job_id
            )
            logger.info(
                "Purge job %s created (%s) for %s by %s",
                job.id,
                job.trigger,
                ", ".join(targets) or "no categories",
                job.actor,
            )
            return await self._execute(job, policies, snapshot_error)
        finally:
            if not dry_run:
                await self.tracker.release_locks(job_id)

    async def _execute(
        self,
        job: PurgeJob,
        policies: Dict[str, RetentionPolicy],
        snapshot_error: Optional[SystemUnavailableError],
    ) -> PurgeJob:
        job = await self.tracker.start(job.id)
        dry_run = job.is_dry_run

        try:
            if snapshot_error is not None:
                raise snapshot_error
            if not dry_run:
                await self.audit_log.ping()
        except SystemUnavailableError as e:
            logger.error("Purge job %s cannot start: %s", job.id, e, exc_info=True)
            return await self.tracker.fail(job.id, str(e))

        metrics = {name: CategoryMetrics() for name in job.target_categories}
        cancelled = asyncio.Event()

        try:
            await asyncio.gather(
                *(
                    self._run_category(
                        job, name, policies.get(name), metrics, cancelled
                    )
                    for name in job.target_categories
                )
            )
            if not dry_run:
                await self._apply_audit_totals(job.id, metrics)
        except Exception as e:
            logger.error("Purge job %s failed: %s", job.id, e, exc_info=True)
            await self.tracker.fail(job.id, f"{type(e).__name__}: {e}", metrics)
            raise

        if cancelled.is_set():
            job = await self.tracker.cancel(job.id, metrics)
        else:
            job = await self.tracker.complete(job.id, metrics)

        logger.info(
            "Purge job %s %s: scanned=%d deleted=%d archived=%d failed=%d bytes=%d",
            job.id,
            job.status,
            job.records_scanned,
            job.records_deleted,
            job.records_archived,
            job.records_failed,
            job.storage_bytes_freed,
        )
        return job

    def _skip(
        self, metrics: CategoryMetrics, name: str, reason: str, error: ConfigurationError
    ) -> None:
        metrics.skipped_reason = reason
        metrics.error = str(error)
        logger.warning("Skipping category '%s': %s", name, error)

    async def _run_category(
        self,
        job: PurgeJob,
        name: str,
        policy: Optional[RetentionPolicy],
        all_metrics: Dict[str, CategoryMetrics],
        cancelled: asyncio.Event,
    ) -> None:
        metrics = all_metrics[name]
        dry_run = job.is_dry_run

        if policy is None:
            error = ConfigurationError(
                f"No active retention policy for category '{name}'", category=name
            )
            return self._skip(metrics, name, "no_active_policy", error)

        category = self.registry.get(name)
        if category is None:
            error = ConfigurationError(
                f"No purgeable store registered for category '{name}'", category=name
            )
            return self._skip(metrics, name, "no_registered_store", error)

        cutoff = policy.cutoff(self.clock())
        metrics.cutoff = cutoff
        metrics.policy_id = policy.id

        try:
            if not dry_run:
                await self._replay_spool(job.id, name)

            token: Optional[str] = None
            while True:
                if await self.tracker.is_cancel_requested(job.id):
                    logger.info("Purge job %s cancelled before next page of '%s'", job.id, name)
                    cancelled.set()
                    break

                holds = await self.guard.snapshot(name)
                if holds.category_held:
                    metrics.skipped_reason = "legal_hold"
                    logger.warning(
                        "Category '%s' is under legal hold (%s), skipping",
                        name,
                        ", ".join(sorted(holds.hold_ids)),
                    )
                    break

                page = await self._with_retries(
                    lambda: category.list_eligible(
                        cutoff, holds, token, self.config.page_size
                    ),
                    f"listing '{name}'",
                )
                metrics.records_scanned += len(page.records)

                if not dry_run:
                    for record in page.records:
                        await self._process_record(
                            job.id, category, policy, record, metrics, job.actor
                        )
                    await self.tracker.record_progress(job.id, all_metrics)

                token = page.next_token
                if not token:
                    break
        except Exception as e:
            metrics.error = f"{type(e).__name__}: {e}"
            logger.warning(
                "Category '%s' stopped in job %s: %s", name, job.id, e, exc_info=True
            )

    # ------------------------------------------------------------------
    # Per-record processing
    # ------------------------------------------------------------------

    def _entry(
        self,
        job_id: str,
        category: PurgeableCategory,
        policy: RetentionPolicy,
        record: PurgeableRecord,
        operation: PurgeOperation,
        actor: str,
        metadata: Dict[str, Any],
    ) -> AuditEntry:
        return AuditEntry(
            action=record_action(category.resource_type, operation),
            resource_type=category.resource_type,
            resource_id=record.id,
            job_id=job_id,
            policy_id=policy.id,
            category=category.name,
            operation=operation,
            actor=actor,
            metadata={
                "owner_id": record.owner_id,
                "record_created_at": record.created_at.isoformat(),
                **metadata,
            },
        )

    async def _process_record(
        self,
        job_id: str,
        category: PurgeableCategory,
        policy: RetentionPolicy,
        record: PurgeableRecord,
        metrics: CategoryMetrics,
        actor: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Archive and delete one record.

        Returns:
            One of ``purged``, ``failed`` or ``held``
        """
        extra = dict(extra_metadata or {})

        if await self.guard.is_held(record.owner_id, category.name):
            metrics.records_skipped_held += 1
            logger.info("Record %s/%s is held, not purging", category.name, record.id)
            return HELD

        if policy.archive_before_delete:
            target = policy.archive_target or ""
            try:
                await self._with_retries(
                    lambda: category.archive_one(record, target),
                    f"archiving {category.name}/{record.id}",
                )
            except Exception as e:
                metrics.records_failed += 1
                logger.warning(
                    "Archive of %s/%s failed, record not deleted: %s",
                    category.name,
                    record.id,
                    e,
                )
                return FAILED

            entry = self._entry(
                job_id,
                category,
                policy,
                record,
                PurgeOperation.ARCHIVE,
                actor,
                {"archive_target": target, **extra},
            )
            if not await self._commit_audit(entry, metrics):
                return FAILED

        operation = (
            PurgeOperation.HARD_DELETE if policy.is_hard_delete else PurgeOperation.SOFT_DELETE
        )
        try:
            freed = await self._with_retries(
                lambda: category.delete_one(record, DeletionMode(policy.deletion_mode)),
                f"deleting {category.name}/{record.id}",
            )
        except Exception as e:
            metrics.records_failed += 1
            logger.warning("Delete of %s/%s failed: %s", category.name, record.id, e)
            return FAILED

        entry = self._entry(
            job_id,
            category,
            policy,
            record,
            operation,
            actor,
            {
                "deletion_mode": policy.deletion_mode,
                "bytes_freed": freed if operation == PurgeOperation.HARD_DELETE else 0,
                **extra,
            },
        )
        if not await self._commit_audit(entry, metrics):
            return FAILED
        return PURGED

    async def _commit_audit(self, entry: AuditEntry, metrics: CategoryMetrics) -> bool:
        """
        Commit the audit entry of an action that already happened.

        If the sink keeps failing the record counts as failed and the entry
        is spooled for the next run to replay. If the spool cannot be written
        either, the full entry is logged at CRITICAL and the run moves on to
        the next record.
        """
        try:
            await self._with_retries(
                lambda: self.audit_log.append(entry), f"auditing {entry.action} {entry.resource_id}"
            )
            return True
        except Exception as e:
            metrics.records_failed += 1
            if self.spool is None:
                self._log_lost_entry(entry, "no spool configured", e)
                metrics.error = f"Audit entry {entry.id} lost: {e}"
                return False
            try:
                await self.spool.write(entry)
            except OSError as spool_error:
                self._log_lost_entry(entry, "spool unwritable", spool_error)
                metrics.error = f"Audit entry {entry.id} could not be spooled: {spool_error}"
            return False

    @staticmethod
    def _log_lost_entry(entry: AuditEntry, reason: str, error: Exception) -> None:
        logger.critical(
            "Audit entry lost (%s): %s metadata=%s (%s)",
            reason,
            entry.to_log_format(),
            json.dumps(entry.metadata, sort_keys=True, default=str),
            error,
        )

    async def _with_retries(
        self, operation: Callable[[], Awaitable[Any]], description: str
    ) -> Any:
        """Run an operation under the per-operation timeout with bounded retries."""
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    operation(), timeout=self.config.operation_timeout_seconds
                )
            except RETRYABLE_ERRORS as e:
                if attempt >= self.config.max_retries:
                    raise
                delay = self.config.retry_backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.2fs",
                    description,
                    type(e).__name__,
                    attempt,
                    self.config.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _replay_spool(self, job_id: str, category: str) -> int:
        """Commit spooled audit entries of a category under this job."""
        if self.spool is None:
            return 0
        pending = await self.spool.pending([category])
        if not pending:
            return 0

        done: List[str] = []
        for entry in pending:
            if await self.audit_log.get_by_id(entry.id) is not None:
                done.append(entry.id)
                continue
            replayed = entry.model_copy(
                update={
                    "job_id": job_id,
                    "checksum": None,
                    "metadata": {
                        **entry.metadata,
                        "original_job_id": entry.job_id,
                        "replayed_at": datetime.utcnow().isoformat(),
                    },
                }
            )
            try:
                await self.audit_log.append(replayed)
            except AuditWriteFailure as e:
                logger.error("Audit replay for '%s' interrupted: %s", category, e)
                break
            done.append(entry.id)

        await self.spool.remove(done)
        if done:
            logger.info(
                "Replayed %d spooled audit entries for '%s' into job %s",
                len(done),
                category,
                job_id,
            )
        return len(done)

    async def _apply_audit_totals(
        self, job_id: str, metrics: Dict[str, CategoryMetrics]
    ) -> None:
        totals = await self.audit_log.job_totals(job_id)
        for name, m in metrics.items():
            t = totals.by_category.get(name)
            m.records_deleted = t.deleted if t else 0
            m.records_archived = t.archived if t else 0
            m.storage_bytes_freed = t.bytes_freed if t else 0

    # ------------------------------------------------------------------
    # Forced purge
    # ------------------------------------------------------------------

    async def force_purge(
        self, category: str, record_ids: List[str], reason: str, actor: str
    ) -> ForcePurgeResult:
        """
        Purge named records regardless of their age.

        Legal holds still apply: if any named record is held the whole
        request is rejected, nothing is touched and a single
        ``force_purge_rejected`` entry is audited.

        Args:
            category: Category of the records
            record_ids: Records to purge
            reason: Justification (at least 10 characters)
            actor: Operator requesting the purge

        Returns:
            Purged, failed and missing record ids with the force job

        Raises:
            ValueError: If no records or no adequate reason are given
            ConfigurationError: If the category has no active policy or store
            HoldViolationAttempt: If any named record is under a legal hold
            JobConflictError: If a run for the category is in flight
        """
        reason = (reason or "").strip()
        if len(reason) < 10:
            raise ValueError("A forced purge needs a reason of at least 10 characters")
        ids = list(dict.fromkeys(str(i) for i in record_ids))
        if not ids:
            raise ValueError("A forced purge needs at least one record id")

        policy = await self.policy_store.active_policy(category)
        if policy is None:
            raise ConfigurationError(
                f"No active retention policy for category '{category}'", category=category
            )
        purgeable = self.registry.get(category)
        if purgeable is None:
            raise ConfigurationError(
                f"No purgeable store registered for category '{category}'", category=category
            )

        records = await purgeable.get_records(ids)
        found = {r.id for r in records}
        missing = [i for i in ids if i not in found]

        held: List[str] = []
        hold_ids: set = set()
        for record in records:
            holds = await self.guard.holds_for(record.owner_id, category)
            if holds:
                held.append(record.id)
                hold_ids.update(h.id for h in holds)

        if held:
            await self.audit_log.append(
                AuditEntry(
                    action=AuditAction.FORCE_PURGE_REJECTED.value,
                    resource_type=purgeable.resource_type,
                    resource_id=category,
                    policy_id=policy.id,
                    category=category,
                    actor=actor,
                    success=False,
                    metadata={
                        "reason": reason,
                        "requested_ids": ids,
                        "held_ids": held,
                        "hold_ids": sorted(hold_ids),
                    },
                )
            )
            logger.warning(
                "Forced purge of %d %s record(s) by %s rejected, %d held",
                len(ids),
                category,
                actor,
                len(held),
            )
            raise HoldViolationAttempt(category, held)

        job_id = str(uuid.uuid4())
        await self.tracker.acquire_locks([category], job_id)
        try:
            job = await self.tracker.create_job(
                JobTrigger.FORCE, [category], actor=actor, job_id=job_id
            )
            job = await self.tracker.start(job.id)
            metrics = {category: CategoryMetrics(policy_id=policy.id)}
            result = ForcePurgeResult(category=category, requested_ids=ids, missing_ids=missing)

            try:
                await self._replay_spool(job.id, category)
                forced = {"forced": True, "reason": reason}
                for record in records:
                    metrics[category].records_scanned += 1
                    outcome = await self._process_record(
                        job.id, purgeable, policy, record, metrics[category], actor, forced
                    )
                    if outcome == PURGED:
                        result.purged_ids.append(record.id)
                    elif outcome == HELD:
                        result.held_ids.append(record.id)
                    else:
                        result.failed_ids.append(record.id)
                await self._apply_audit_totals(job.id, metrics)
            except Exception as e:
                logger.error("Forced purge job %s failed: %s", job.id, e, exc_info=True)
                await self.tracker.fail(job.id, f"{type(e).__name__}: {e}", metrics)
                raise

            result.job = await self.tracker.complete(job.id, metrics)
        finally:
            await self.tracker.release_locks(job_id)

        logger.info(
            "Forced purge job %s by %s: %d purged, %d failed, %d missing",
            job_id,
            actor,
            len(result.purged_ids),
            len(result.failed_ids),
            len(result.missing_ids),
        )
        return result
