"""
Persistent registry of legal holds.

Holds are created and released by privileged operators. Released holds are
kept, unchanged, as part of the audit history.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.exc import SQLAlchemyError

from ..database import Base, Database
from ..exceptions import HoldNotFoundError, LegalHoldError, SystemUnavailableError
from .models import HoldScope, HoldStatus, LegalHold

logger = logging.getLogger(__name__)


class LegalHoldDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for legal holds."""

    __tablename__ = "legal_holds"

    id = Column(String(50), primary_key=True)
    status = Column(String(20), nullable=False, index=True)
    user_ids = Column(JSON, nullable=False)
    data_categories = Column(JSON, nullable=False)
    reason = Column(Text, nullable=False)
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False)
    released_at = Column(DateTime, nullable=True)
    released_by = Column(String(100), nullable=True)


class LegalHoldRegistry:
    """Stores active and released legal holds."""

    def __init__(self, database: Database):
        self.database = database

    def _hold_to_db(self, hold: LegalHold) -> LegalHoldDB:
        return LegalHoldDB(
            id=hold.id,
            status=hold.status,
            user_ids=sorted(hold.scope.user_ids),
            data_categories=sorted(hold.scope.data_categories),
            reason=hold.reason,
            created_by=hold.created_by,
            created_at=hold.created_at,
            released_at=hold.released_at,
            released_by=hold.released_by,
        )

    def _db_to_hold(self, row: LegalHoldDB) -> LegalHold:
        return LegalHold(
            id=row.id,
            status=row.status,
            scope=HoldScope(
                user_ids=frozenset(row.user_ids or []),
                data_categories=frozenset(row.data_categories or []),
            ),
            reason=row.reason,
            created_by=row.created_by,
            created_at=row.created_at,
            released_at=row.released_at,
            released_by=row.released_by,
        )

    async def create_hold(
        self,
        scope: HoldScope,
        reason: str,
        created_by: str,
        allow_global: bool = False,
    ) -> LegalHold:
        """
        Place a new legal hold.

        Args:
            scope: Users and/or categories to protect
            reason: Justification for the hold
            created_by: Operator placing the hold
            allow_global: Permit a hold with both scope dimensions empty

        Returns:
            The active hold

        Raises:
            LegalHoldError: If the scope is global and ``allow_global`` is False
        """
        if scope.is_global and not allow_global:
            raise LegalHoldError(
                "A hold with no users and no categories freezes all purging; "
                "pass allow_global=True to place it deliberately"
            )

        hold = LegalHold(scope=scope, reason=reason, created_by=created_by)

        with self.database.session() as session:
            session.add(self._hold_to_db(hold))
            session.commit()

        logger.info(
            "Legal hold %s placed by %s (users=%s, categories=%s)",
            hold.id,
            created_by,
            sorted(scope.user_ids) or "*",
            sorted(scope.data_categories) or "*",
        )
        return hold

    async def release_hold(self, hold_id: str, released_by: str) -> LegalHold:
        """
        Release an active hold.

        Raises:
            HoldNotFoundError: If the hold does not exist
            LegalHoldError: If the hold was already released
        """
        with self.database.session() as session:
            row = session.get(LegalHoldDB, hold_id)
            if row is None:
                raise HoldNotFoundError(hold_id)
            if row.status == HoldStatus.RELEASED.value:
                raise LegalHoldError(
                    f"Legal hold {hold_id} was released at {row.released_at} "
                    "and can no longer be changed"
                )

            row.status = HoldStatus.RELEASED.value
            row.released_at = datetime.utcnow()
            row.released_by = released_by
            session.commit()
            hold = self._db_to_hold(row)

        logger.info("Legal hold %s released by %s", hold_id, released_by)
        return hold

    async def get_hold(self, hold_id: str) -> LegalHold:
        with self.database.session() as session:
            row = session.get(LegalHoldDB, hold_id)
            if row is None:
                raise HoldNotFoundError(hold_id)
            return self._db_to_hold(row)

    async def list_holds(self, status: Optional[HoldStatus] = None) -> List[LegalHold]:
        with self.database.session() as session:
            q = session.query(LegalHoldDB)
            if status is not None:
                q = q.filter(LegalHoldDB.status == HoldStatus(status).value)
            return [self._db_to_hold(r) for r in q.order_by(LegalHoldDB.created_at).all()]

    async def active_holds(self) -> List[LegalHold]:
        """
        Read all active holds.

        Raises:
            SystemUnavailableError: If the registry cannot be read
        """
        try:
            return await self.list_holds(HoldStatus.ACTIVE)
        except SQLAlchemyError as e:
            raise SystemUnavailableError(f"Legal hold registry is unreachable: {e}") from e
