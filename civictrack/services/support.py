# File: civictrack/services/support.py
"""Citizen support ("+1") on reports. The row and the counter move in one transaction."""

import logging

from sqlalchemy import case
from sqlalchemy.orm import Session

from civictrack.core.errors import AuthorizationError, ConflictError, NotFoundError
from civictrack.core.security import Principal
from civictrack.db.session import unit_of_work
from civictrack.models.report import Report
from civictrack.models.report_support import ReportSupport
from civictrack.services import reports
from civictrack.services.authorization import Capability, require_capability

logger = logging.getLogger(__name__)


def _refreshed_count(db: Session, report_id: int) -> int:
    return db.query(Report.support_count).filter(Report.id == report_id).scalar() or 0


def support_report(db: Session, report_id: int, principal: Principal) -> int:
    """Add the principal's support. Returns the new support count."""
    with unit_of_work(db, conflict_message="report already supported"):
        require_capability(principal, Capability.SUPPORT)
        report = reports.get_report(db, report_id, lock=True)
        if report.user_id == principal.user_id:
            raise AuthorizationError("you cannot support your own report")

        exists = (
            db.query(ReportSupport.id)
            .filter(ReportSupport.report_id == report_id, ReportSupport.user_id == principal.user_id)
            .first()
        )
        if exists:
            raise ConflictError("report already supported")

        db.add(ReportSupport(report_id=report_id, user_id=principal.user_id))
        # counter is bumped in SQL so concurrent supporters never lose an increment
        db.query(Report).filter(Report.id == report_id).update(
            {Report.support_count: Report.support_count + 1}, synchronize_session=False
        )
        db.flush()
        count = _refreshed_count(db, report_id)

    logger.info("report %s supported by user %s (count=%s)", report_id, principal.user_id, count)
    return count


def unsupport_report(db: Session, report_id: int, principal: Principal) -> int:
    """Withdraw the principal's support. Returns the new support count."""
    with unit_of_work(db):
        require_capability(principal, Capability.SUPPORT)
        reports.get_report(db, report_id, lock=True)
        row = (
            db.query(ReportSupport)
            .filter(ReportSupport.report_id == report_id, ReportSupport.user_id == principal.user_id)
            .first()
        )
        if not row:
            raise NotFoundError("Support", f"{report_id}/{principal.user_id}")

        db.delete(row)
        db.query(Report).filter(Report.id == report_id).update(
            {Report.support_count: case((Report.support_count > 0, Report.support_count - 1), else_=0)},
            synchronize_session=False,
        )
        db.flush()
        count = _refreshed_count(db, report_id)

    logger.info("report %s unsupported by user %s (count=%s)", report_id, principal.user_id, count)
    return count


def has_supported(db: Session, report_id: int, user_id: int) -> bool:
    return (
        db.query(ReportSupport.id)
        .filter(ReportSupport.report_id == report_id, ReportSupport.user_id == user_id)
        .first()
        is not None
    )
