"""Exceptions raised by the purge engine."""

from typing import Iterable, List, Optional


class LifecycleError(Exception):
    """Base exception for data lifecycle operations."""

    def __init__(self, message: str, category: Optional[str] = None):
        self.category = category
        super().__init__(message)


class ConfigurationError(LifecycleError):
    """Raised when a category cannot be purged because it is not configured."""


class TransientIOError(LifecycleError):
    """Raised when an archive, delete or audit call fails for a single record."""

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        category: Optional[str] = None,
    ):
        self.record_id = record_id
        super().__init__(message, category=category)


class HoldViolationAttempt(LifecycleError):
    """Raised when any purge path targets records under an active legal hold."""

    def __init__(self, category: str, record_ids: Iterable[str]):
        self.record_ids: List[str] = list(record_ids)
        super().__init__(
            f"{len(self.record_ids)} record(s) in category '{category}' are under "
            f"an active legal hold and cannot be purged: {', '.join(self.record_ids)}",
            category=category,
        )


class JobConflictError(LifecycleError):
    """Raised when a run is triggered for a category that already has one in flight."""

    def __init__(self, category: str, holder_job_id: Optional[str] = None):
        self.holder_job_id = holder_job_id
        message = f"A purge run for category '{category}' is already in progress"
        if holder_job_id:
            message += f" (job {holder_job_id})"
        super().__init__(message, category=category)


class AuditWriteFailure(LifecycleError):
    """Raised when an audit entry could not be committed."""

    def __init__(self, message: str, entry_id: Optional[str] = None):
        self.entry_id = entry_id
        super().__init__(message)


class SystemUnavailableError(LifecycleError):
    """Raised when a backing store cannot be reached at all."""


class InvalidJobTransition(LifecycleError):
    """Raised when a purge job is moved along an edge the state machine forbids."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class JobNotFoundError(LifecycleError):
    """Raised when a purge job id is unknown."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Purge job {job_id} not found")


class PolicyConflictError(LifecycleError):
    """Raised when a second active policy is created for a category."""

    def __init__(self, category: str, existing_policy_id: str):
        self.existing_policy_id = existing_policy_id
        super().__init__(
            f"Category '{category}' already has active policy {existing_policy_id}",
            category=category,
        )


class PolicyNotFoundError(LifecycleError):
    """Raised when a retention policy id is unknown."""

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Retention policy {policy_id} not found")


class LegalHoldError(LifecycleError):
    """Raised when a legal hold operation is not allowed."""


class HoldNotFoundError(LegalHoldError):
    """Raised when a legal hold id is unknown."""

    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__(f"Legal hold {hold_id} not found")
