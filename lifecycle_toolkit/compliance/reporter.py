"""
Compliance reporter.

Builds a :class:`ComplianceReport` from what the engine has already
recorded. Generating a report never writes anything.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from ..audit_trail.log import AuditLog
from ..audit_trail.models import AuditAction, AuditQuery
from ..config import LifecycleConfig, get_config
from ..jobs.models import JobStatus, JobTrigger, PurgeJob
from ..jobs.tracker import JobTracker
from ..legal_hold.registry import LegalHoldRegistry
from ..policies.store import PolicyStore
from .models import (
    CategoryComplianceMetrics,
    ComplianceReport,
    Recommendation,
    RecommendationType,
    Violation,
    ViolationType,
)

logger = logging.getLogger(__name__)

MISSING_CONFIGURATION_REASONS = ("no_active_policy", "no_registered_store")

# AuditQuery caps a single page at this many entries
AUDIT_PAGE_SIZE = 10000


class ComplianceReporter:
    """Derives compliance reports from jobs, audit entries, policies and holds."""

    def __init__(
        self,
        audit_log: AuditLog,
        tracker: JobTracker,
        policy_store: PolicyStore,
        hold_registry: LegalHoldRegistry,
        config: Optional[LifecycleConfig] = None,
    ):
        self.audit_log = audit_log
        self.tracker = tracker
        self.policy_store = policy_store
        self.hold_registry = hold_registry
        self.config = config or get_config()

    async def generate(
        self, period_start: datetime, period_end: datetime, generated_by: str = "system"
    ) -> ComplianceReport:
        """
        Generate a compliance report for a period.

        Args:
            period_start: Report period start
            period_end: Report period end
            generated_by: User or process requesting the report

        Returns:
            Report with per-category totals, violations and recommendations
        """
        report = ComplianceReport(
            period_start=period_start, period_end=period_end, generated_by=generated_by
        )

        jobs = [
            job
            for job in await self.tracker.list_jobs(
                since=period_start, until=period_end, limit=100000
            )
            if job.trigger != JobTrigger.DRY_RUN.value
        ]
        skipped_for_config: Dict[str, str] = {}

        for job in jobs:
            report.jobs_total += 1
            if job.status == JobStatus.COMPLETED.value:
                report.jobs_completed += 1
            elif job.status == JobStatus.CANCELLED.value:
                report.jobs_cancelled += 1
            elif job.status == JobStatus.FAILED.value:
                report.jobs_failed += 1
                report.violations.append(
                    Violation(
                        type=ViolationType.JOB_FAILED,
                        job_id=job.id,
                        message=f"Purge job {job.id} failed: {job.error_message or 'unknown error'}",
                        details={"categories": job.target_categories},
                    )
                )

            self._add_job_metrics(report, job, skipped_for_config)

            if job.status in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value):
                report.violations.extend(await self._count_mismatches(job))

        report.audit_actions = await self._audit_action_counts(period_start, period_end)

        report.violations.extend(await self._missed_cadence(report, period_end))
        report.violations.extend(await self._integrity_violations(period_start, period_end))
        report.recommendations.extend(
            await self._recommendations(report, skipped_for_config)
        )

        logger.info(
            "Compliance report %s for %s - %s: %d jobs, %d violations",
            report.id,
            period_start.isoformat(),
            period_end.isoformat(),
            report.jobs_total,
            len(report.violations),
        )
        return report

    def _add_job_metrics(
        self, report: ComplianceReport, job: PurgeJob, skipped_for_config: Dict[str, str]
    ) -> None:
        for name in job.target_categories:
            totals = report.categories.setdefault(
                name, CategoryComplianceMetrics(category=name)
            )
            totals.jobs_run += 1
            if job.status == JobStatus.FAILED.value:
                totals.jobs_failed += 1
            if job.status == JobStatus.COMPLETED.value and job.completed_at:
                if totals.last_completed_at is None or job.completed_at > totals.last_completed_at:
                    totals.last_completed_at = job.completed_at

            metrics = job.category_metrics.get(name)
            if metrics is None:
                continue
            if metrics.skipped_reason in MISSING_CONFIGURATION_REASONS:
                skipped_for_config[name] = metrics.skipped_reason
            if metrics.policy_id:
                totals.policy_id = metrics.policy_id
            totals.records_scanned += metrics.records_scanned
            totals.records_deleted += metrics.records_deleted
            totals.records_archived += metrics.records_archived
            totals.records_failed += metrics.records_failed
            totals.records_skipped_held += metrics.records_skipped_held
            totals.storage_bytes_freed += metrics.storage_bytes_freed

    async def _count_mismatches(self, job: PurgeJob) -> List[Violation]:
        """Compare a finished job's counters with its audit entries."""
        audit = await self.audit_log.job_totals(job.id)
        violations = []
        names = set(job.category_metrics) | set(audit.by_category)
        for name in sorted(names):
            metrics = job.category_metrics.get(name)
            recorded = audit.by_category.get(name)
            job_deleted = metrics.records_deleted if metrics else 0
            job_archived = metrics.records_archived if metrics else 0
            audit_deleted = recorded.deleted if recorded else 0
            audit_archived = recorded.archived if recorded else 0
            if (job_deleted, job_archived) != (audit_deleted, audit_archived):
                violations.append(
                    Violation(
                        type=ViolationType.COUNT_MISMATCH,
                        category=name,
                        job_id=job.id,
                        message=(
                            f"Job {job.id} reports {job_deleted} deleted / {job_archived} "
                            f"archived in '{name}' but the audit log holds "
                            f"{audit_deleted} / {audit_archived}"
                        ),
                        details={
                            "job_deleted": job_deleted,
                            "job_archived": job_archived,
                            "audit_deleted": audit_deleted,
                            "audit_archived": audit_archived,
                        },
                    )
                )
        return violations

    async def _audit_action_counts(
        self, period_start: datetime, period_end: datetime
    ) -> Dict[str, int]:
        counts: Counter = Counter()
        offset = 0
        while True:
            entries = await self.audit_log.query(
                AuditQuery(
                    start_date=period_start,
                    end_date=period_end,
                    limit=AUDIT_PAGE_SIZE,
                    offset=offset,
                    sort_desc=False,
                )
            )
            counts.update(e.action for e in entries)
            if len(entries) < AUDIT_PAGE_SIZE:
                return dict(counts)
            offset += AUDIT_PAGE_SIZE

    async def _missed_cadence(
        self, report: ComplianceReport, period_end: datetime
    ) -> List[Violation]:
        """Policies in force at period end whose category missed its cadence."""
        violations = []
        for policy in await self.policy_store.policies_in_force(period_end):
            cadence = policy.purge_cadence or self.config.cadence_for(policy.retention_period)
            window_start = period_end - cadence
            if policy.created_at > window_start:
                # Not in force for a full cadence yet
                continue

            last = await self.tracker.get_last_completed(policy.data_category, before=period_end)
            if last is not None and last.completed_at and last.completed_at >= window_start:
                continue

            violations.append(
                Violation(
                    type=ViolationType.MISSED_CADENCE,
                    category=policy.data_category,
                    message=(
                        f"No completed purge for '{policy.data_category}' within "
                        f"its cadence of {cadence} before {period_end.isoformat()}"
                    ),
                    details={
                        "cadence_seconds": cadence.total_seconds(),
                        "last_completed_at": (
                            last.completed_at.isoformat()
                            if last is not None and last.completed_at
                            else None
                        ),
                    },
                )
            )
            report.categories.setdefault(
                policy.data_category,
                CategoryComplianceMetrics(category=policy.data_category, policy_id=policy.id),
            )
        return violations

    async def _integrity_violations(
        self, period_start: datetime, period_end: datetime
    ) -> List[Violation]:
        results = await self.audit_log.verify_integrity(period_start, period_end)
        if not results["invalid"]:
            return []
        return [
            Violation(
                type=ViolationType.AUDIT_INTEGRITY,
                message=(
                    f"{results['invalid']} of {results['total_checked']} audit entries "
                    "failed checksum verification"
                ),
                details={"entry_ids": [e["id"] for e in results["invalid_entries"]]},
            )
        ]

    async def _recommendations(
        self, report: ComplianceReport, skipped_for_config: Dict[str, str]
    ) -> List[Recommendation]:
        recommendations = []
        threshold = self.config.failure_rate_review_threshold

        for name, totals in sorted(report.categories.items()):
            if totals.failure_rate > threshold:
                recommendations.append(
                    Recommendation(
                        type=RecommendationType.NEEDS_REVIEW,
                        category=name,
                        message=(
                            f"'{name}' needs review: {totals.failure_rate:.1f}% of scanned "
                            f"records failed (threshold {threshold:.1f}%)"
                        ),
                    )
                )

        for hold in await self.hold_registry.active_holds():
            if hold.scope.is_global:
                recommendations.append(
                    Recommendation(
                        type=RecommendationType.GLOBAL_HOLD_ACTIVE,
                        message=(
                            f"Global legal hold {hold.id} freezes all purging "
                            f"(created by {hold.created_by}: {hold.reason})"
                        ),
                    )
                )

        rejected = report.audit_actions.get(AuditAction.FORCE_PURGE_REJECTED.value, 0)
        if rejected:
            recommendations.append(
                Recommendation(
                    type=RecommendationType.FORCE_PURGE_REJECTED,
                    message=(
                        f"{rejected} forced purge request(s) targeted held records "
                        "and were rejected"
                    ),
                )
            )

        for name, reason in sorted(skipped_for_config.items()):
            recommendations.append(
                Recommendation(
                    type=RecommendationType.MISSING_CONFIGURATION,
                    category=name,
                    message=f"'{name}' was skipped ({reason.replace('_', ' ')})",
                )
            )

        return recommendations
