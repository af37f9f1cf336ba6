"""
Append-only audit log backed by SQL.

The log exposes no update or delete surface. Entries are sealed with a
checksum before they are written and can be verified later.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, asc, desc
from sqlalchemy.exc import SQLAlchemyError

from ..database import Base, Database
from ..exceptions import AuditWriteFailure, SystemUnavailableError
from .models import AuditEntry, AuditQuery, JobAuditTotals

logger = logging.getLogger(__name__)


class AuditEntryDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for audit entries."""

    __tablename__ = "purge_audit_entries"

    id = Column(String(50), primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)

    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(500), nullable=False, index=True)

    job_id = Column(String(50), nullable=True, index=True)
    policy_id = Column(String(50), nullable=True)
    category = Column(String(100), nullable=True, index=True)
    operation = Column(String(20), nullable=True)

    actor = Column(String(100), nullable=False, index=True)
    success = Column(Boolean, nullable=False, default=True)
    # "metadata" is reserved on declarative classes
    entry_metadata = Column("metadata", JSON, nullable=True)

    checksum = Column(String(128), nullable=False)

    __table_args__ = (
        Index("idx_purge_audit_timestamp_action", timestamp, action),
        Index("idx_purge_audit_job_operation", job_id, operation),
        Index("idx_purge_audit_resource", resource_type, resource_id),
    )


class AuditLog:
    """Append-only ledger of every mutating action."""

    def __init__(self, database: Database):
        self.database = database

    def _entry_to_db(self, entry: AuditEntry) -> AuditEntryDB:
        return AuditEntryDB(
            id=entry.id,
            timestamp=entry.timestamp,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            job_id=entry.job_id,
            policy_id=entry.policy_id,
            category=entry.category,
            operation=entry.operation,
            actor=entry.actor,
            success=entry.success,
            entry_metadata=entry.metadata,
            checksum=entry.checksum,
        )

    def _db_to_entry(self, row: AuditEntryDB) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            timestamp=row.timestamp,
            action=row.action,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            job_id=row.job_id,
            policy_id=row.policy_id,
            category=row.category,
            operation=row.operation,
            actor=row.actor,
            success=row.success,
            metadata=row.entry_metadata or {},
            checksum=row.checksum,
        )

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Commit an audit entry.

        Args:
            entry: Entry to append

        Returns:
            The committed entry, including its checksum

        Raises:
            AuditWriteFailure: If the entry could not be committed
        """
        sealed = entry.sealed()
        await asyncio.to_thread(self._write, sealed)
        logger.debug("Audit: %s", sealed.to_log_format())
        return sealed

    def _write(self, sealed: AuditEntry) -> None:
        try:
            with self.database.session() as session:
                session.add(self._entry_to_db(sealed))
                session.commit()
        except SQLAlchemyError as e:
            raise AuditWriteFailure(
                f"Could not commit audit entry {sealed.id} ({sealed.action}): {e}",
                entry_id=sealed.id,
            ) from e

    async def ping(self) -> None:
        """
        Raises:
            SystemUnavailableError: If the audit sink cannot be reached
        """
        self.database.ping("audit log")

    async def query(self, query: AuditQuery) -> List[AuditEntry]:
        """Query audit entries with filters."""
        with self.database.session() as session:
            q = session.query(AuditEntryDB)

            if query.start_date:
                q = q.filter(AuditEntryDB.timestamp >= query.start_date)
            if query.end_date:
                q = q.filter(AuditEntryDB.timestamp <= query.end_date)

            if query.actors:
                q = q.filter(AuditEntryDB.actor.in_(query.actors))
            if query.actions:
                q = q.filter(AuditEntryDB.action.in_(query.actions))
            if query.resource_types:
                q = q.filter(AuditEntryDB.resource_type.in_(query.resource_types))
            if query.resource_ids:
                q = q.filter(AuditEntryDB.resource_id.in_(query.resource_ids))
            if query.job_ids:
                q = q.filter(AuditEntryDB.job_id.in_(query.job_ids))
            if query.categories:
                q = q.filter(AuditEntryDB.category.in_(query.categories))

            if query.success_only:
                q = q.filter(AuditEntryDB.success.is_(True))
            elif query.failures_only:
                q = q.filter(AuditEntryDB.success.is_(False))

            order = desc if query.sort_desc else asc
            q = q.order_by(order(AuditEntryDB.timestamp), order(AuditEntryDB.id))

            q = q.limit(query.limit).offset(query.offset)
            return [self._db_to_entry(r) for r in q.all()]

    async def get_by_id(self, entry_id: str) -> Optional[AuditEntry]:
        with self.database.session() as session:
            row = session.get(AuditEntryDB, entry_id)
            return self._db_to_entry(row) if row is not None else None

    async def count(self, job_id: Optional[str] = None) -> int:
        """Number of entries, optionally restricted to one job."""
        with self.database.session() as session:
            q = session.query(AuditEntryDB)
            if job_id is not None:
                q = q.filter(AuditEntryDB.job_id == job_id)
            return q.count()

    async def job_totals(self, job_id: str) -> JobAuditTotals:
        """
        Derive a job's deleted/archived/bytes counters from its entries.

        Args:
            job_id: Purge job

        Returns:
            Totals per category
        """
        totals = JobAuditTotals(job_id=job_id)
        with self.database.session() as session:
            rows = (
                session.query(AuditEntryDB)
                .filter(
                    AuditEntryDB.job_id == job_id,
                    AuditEntryDB.operation.isnot(None),
                    AuditEntryDB.success.is_(True),
                )
                .all()
            )
            for row in rows:
                totals.add(self._db_to_entry(row))
        return totals

    async def verify_integrity(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Verify checksums of stored audit entries."""
        results: Dict[str, Any] = {
            "total_checked": 0,
            "valid": 0,
            "invalid": 0,
            "invalid_entries": [],
        }

        with self.database.session() as session:
            q = session.query(AuditEntryDB)

            if start_date:
                q = q.filter(AuditEntryDB.timestamp >= start_date)
            if end_date:
                q = q.filter(AuditEntryDB.timestamp <= end_date)

            for row in q.all():
                results["total_checked"] += 1
                entry = self._db_to_entry(row)

                if row.checksum and entry.verify_checksum(row.checksum):
                    results["valid"] += 1
                else:
                    results["invalid"] += 1
                    results["invalid_entries"].append(
                        {
                            "id": entry.id,
                            "timestamp": entry.timestamp.isoformat(),
                            "stored_checksum": row.checksum,
                            "calculated_checksum": entry.calculate_checksum(),
                        }
                    )

        return results
