"""
Persistent store for retention policies.

Only one policy per data category may be active at a time. Replaced
policies are deactivated rather than deleted so their history stays
available for audit.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, or_, true
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import Base, Database
from ..exceptions import (
    PolicyConflictError,
    PolicyNotFoundError,
    SystemUnavailableError,
)
from .models import RetentionPolicy

logger = logging.getLogger(__name__)


class RetentionPolicyDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for retention policies."""

    __tablename__ = "retention_policies"

    id = Column(String(50), primary_key=True)
    data_category = Column(String(100), nullable=False, index=True)
    retention_seconds = Column(Float, nullable=False)
    deletion_mode = Column(String(10), nullable=False)
    archive_before_delete = Column(Boolean, nullable=False, default=False)
    archive_target = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    purge_cadence_seconds = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_policy_category_active", data_category, is_active),
        # At most one active row per category, even with concurrent writers
        Index(
            "uq_policy_active_category",
            data_category,
            unique=True,
            sqlite_where=is_active == true(),
            postgresql_where=is_active == true(),
        ),
    )


class PolicyStore:
    """Holds one active retention policy per data category."""

    def __init__(self, database: Database):
        self.database = database

    def _policy_to_db(self, policy: RetentionPolicy) -> RetentionPolicyDB:
        return RetentionPolicyDB(
            id=policy.id,
            data_category=policy.data_category,
            retention_seconds=policy.retention_period.total_seconds(),
            deletion_mode=policy.deletion_mode,
            archive_before_delete=policy.archive_before_delete,
            archive_target=policy.archive_target,
            is_active=policy.is_active,
            purge_cadence_seconds=(
                policy.purge_cadence.total_seconds() if policy.purge_cadence else None
            ),
            created_at=policy.created_at,
            updated_at=policy.updated_at,
        )

    @staticmethod
    def _active_row(session: Session, category: str) -> Optional[RetentionPolicyDB]:
        return (
            session.query(RetentionPolicyDB)
            .filter(
                RetentionPolicyDB.data_category == category,
                RetentionPolicyDB.is_active.is_(True),
            )
            .first()
        )

    def _db_to_policy(self, row: RetentionPolicyDB) -> RetentionPolicy:
        return RetentionPolicy(
            id=row.id,
            data_category=row.data_category,
            retention_period=timedelta(seconds=row.retention_seconds),
            deletion_mode=row.deletion_mode,
            archive_before_delete=row.archive_before_delete,
            archive_target=row.archive_target,
            is_active=row.is_active,
            purge_cadence=(
                timedelta(seconds=row.purge_cadence_seconds)
                if row.purge_cadence_seconds
                else None
            ),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def create_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        """
        Store a new policy.

        Args:
            policy: Policy to store

        Returns:
            The stored policy

        Raises:
            PolicyConflictError: If the category already has an active policy
        """
        with self.database.session() as session:
            if policy.is_active:
                existing = self._active_row(session, policy.data_category)
                if existing is not None:
                    raise PolicyConflictError(policy.data_category, existing.id)

            session.add(self._policy_to_db(policy))
            try:
                session.commit()
            except IntegrityError:
                # Another writer activated a policy after the check above
                session.rollback()
                winner = self._active_row(session, policy.data_category)
                raise PolicyConflictError(
                    policy.data_category, winner.id if winner is not None else "unknown"
                )

        logger.info("Created retention policy %s (%s)", policy.id, policy.describe())
        return policy

    async def replace_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        """
        Activate a policy, deactivating whatever was active for its category.

        Args:
            policy: New policy for the category

        Returns:
            The stored policy

        Raises:
            PolicyConflictError: If a concurrent writer activated another policy
            for the category first
        """
        now = datetime.utcnow()
        with self.database.session() as session:
            previous = (
                session.query(RetentionPolicyDB)
                .filter(
                    RetentionPolicyDB.data_category == policy.data_category,
                    RetentionPolicyDB.is_active.is_(True),
                )
                .all()
            )
            for row in previous:
                row.is_active = False
                row.updated_at = now
            session.flush()

            stored = policy.model_copy(update={"is_active": True, "updated_at": now})
            session.add(self._policy_to_db(stored))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                winner = self._active_row(session, policy.data_category)
                raise PolicyConflictError(
                    policy.data_category, winner.id if winner is not None else "unknown"
                )

        for row in previous:
            logger.info(
                "Retention policy %s for '%s' superseded by %s",
                row.id,
                policy.data_category,
                stored.id,
            )
        return stored

    async def deactivate_policy(self, policy_id: str) -> RetentionPolicy:
        """
        Deactivate a policy. Its category is skipped by purge runs afterwards.

        Raises:
            PolicyNotFoundError: If the policy does not exist
        """
        with self.database.session() as session:
            row = session.get(RetentionPolicyDB, policy_id)
            if row is None:
                raise PolicyNotFoundError(policy_id)
            row.is_active = False
            row.updated_at = datetime.utcnow()
            session.commit()
            return self._db_to_policy(row)

    async def get_policy(self, policy_id: str) -> RetentionPolicy:
        with self.database.session() as session:
            row = session.get(RetentionPolicyDB, policy_id)
            if row is None:
                raise PolicyNotFoundError(policy_id)
            return self._db_to_policy(row)

    async def active_policy(self, category: str) -> Optional[RetentionPolicy]:
        """
        Get the active policy for a category.

        Args:
            category: Data category

        Returns:
            The active policy, or None when the category is not configured
        """
        with self.database.session() as session:
            row = (
                session.query(RetentionPolicyDB)
                .filter(
                    RetentionPolicyDB.data_category == category,
                    RetentionPolicyDB.is_active.is_(True),
                )
                .first()
            )
            return self._db_to_policy(row) if row is not None else None

    async def active_policies(self) -> List[RetentionPolicy]:
        with self.database.session() as session:
            rows = (
                session.query(RetentionPolicyDB)
                .filter(RetentionPolicyDB.is_active.is_(True))
                .order_by(RetentionPolicyDB.data_category)
                .all()
            )
            return [self._db_to_policy(r) for r in rows]

    async def policies_in_force(self, at: datetime) -> List[RetentionPolicy]:
        """
        Policies that were active at a point in time, one per category.

        A deactivated policy counts as in force until its last update, which
        is when it was deactivated or superseded.
        """
        with self.database.session() as session:
            rows = (
                session.query(RetentionPolicyDB)
                .filter(
                    RetentionPolicyDB.created_at <= at,
                    or_(
                        RetentionPolicyDB.is_active.is_(True),
                        RetentionPolicyDB.updated_at > at,
                    ),
                )
                .order_by(RetentionPolicyDB.data_category, RetentionPolicyDB.created_at)
                .all()
            )
            # Latest wins when a replacement straddles the instant
            by_category = {row.data_category: self._db_to_policy(row) for row in rows}
        return [by_category[c] for c in sorted(by_category)]

    async def list_policies(self, include_inactive: bool = False) -> List[RetentionPolicy]:
        with self.database.session() as session:
            q = session.query(RetentionPolicyDB)
            if not include_inactive:
                q = q.filter(RetentionPolicyDB.is_active.is_(True))
            rows = q.order_by(
                RetentionPolicyDB.data_category, RetentionPolicyDB.created_at
            ).all()
            return [self._db_to_policy(r) for r in rows]

    async def snapshot(
        self, categories: Optional[Iterable[str]] = None
    ) -> Dict[str, RetentionPolicy]:
        """
        Read the active policies once for the duration of a purge run.

        Args:
            categories: Restrict the snapshot to these categories

        Returns:
            Mapping of category to its active policy (unconfigured categories
            are absent)

        Raises:
            SystemUnavailableError: If the policy store cannot be read
        """
        try:
            with self.database.session() as session:
                q = session.query(RetentionPolicyDB).filter(
                    RetentionPolicyDB.is_active.is_(True)
                )
                if categories is not None:
                    q = q.filter(RetentionPolicyDB.data_category.in_(list(categories)))
                return {row.data_category: self._db_to_policy(row) for row in q.all()}
        except SQLAlchemyError as e:
            raise SystemUnavailableError(f"Policy store is unreachable: {e}") from e
