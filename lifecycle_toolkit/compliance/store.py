"""Persistence for generated compliance reports."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, Index, String

from ..database import Base, Database
from .models import ComplianceReport

logger = logging.getLogger(__name__)


class ComplianceReportDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for compliance reports."""

    __tablename__ = "compliance_reports"

    id = Column(String(50), primary_key=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    generated_by = Column(String(100), nullable=False)
    generated_at = Column(DateTime, nullable=False, index=True)
    report = Column(JSON, nullable=False)

    __table_args__ = (Index("idx_compliance_report_period", period_start, period_end),)


class ComplianceReportStore:
    """Saves reports so a period's report can be served without regenerating it."""

    def __init__(self, database: Database):
        self.database = database

    async def save(self, report: ComplianceReport) -> ComplianceReport:
        with self.database.session() as session:
            session.merge(
                ComplianceReportDB(
                    id=report.id,
                    period_start=report.period_start,
                    period_end=report.period_end,
                    generated_by=report.generated_by,
                    generated_at=report.generated_at,
                    report=report.model_dump(mode="json"),
                )
            )
            session.commit()
        logger.debug("Stored compliance report %s", report.id)
        return report

    async def get(self, report_id: str) -> Optional[ComplianceReport]:
        with self.database.session() as session:
            row = session.get(ComplianceReportDB, report_id)
            return ComplianceReport.model_validate(row.report) if row is not None else None

    async def find(
        self, period_start: datetime, period_end: datetime
    ) -> Optional[ComplianceReport]:
        """Most recently generated report for exactly this period."""
        with self.database.session() as session:
            row = (
                session.query(ComplianceReportDB)
                .filter(
                    ComplianceReportDB.period_start == period_start,
                    ComplianceReportDB.period_end == period_end,
                )
                .order_by(ComplianceReportDB.generated_at.desc())
                .first()
            )
            return ComplianceReport.model_validate(row.report) if row is not None else None

    async def list(self, limit: int = 50) -> List[ComplianceReport]:
        with self.database.session() as session:
            rows = (
                session.query(ComplianceReportDB)
                .order_by(ComplianceReportDB.generated_at.desc())
                .limit(limit)
                .all()
            )
            return [ComplianceReport.model_validate(row.report) for row in rows]
