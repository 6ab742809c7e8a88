# File: civictrack/services/reports.py
"""
Report entity store.

Plain repository functions over the ``reports`` table and its two audit
trails. Every read here filters ``deleted_at IS NULL``; the lifecycle module
is the only writer of status fields.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from civictrack.core import clock
from civictrack.core.errors import AuthorizationError, NotFoundError, ValidationError
from civictrack.core.security import Principal
from civictrack.db.session import unit_of_work
from civictrack.models.department import DepartmentHistory
from civictrack.models.report import Report, ReportStatus, ReportStatusHistory, ReportType
from civictrack.services import assignment_ledger, directory

logger = logging.getLogger(__name__)

INITIAL_DEPARTMENT_REASON = "initial department"


def get_report(db: Session, report_id: int, lock: bool = False) -> Report:
    q = db.query(Report).filter(Report.id == report_id, Report.deleted_at.is_(None))
    if lock:
        q = q.with_for_update().populate_existing()
    report = q.first()
    if not report:
        raise NotFoundError("Report", report_id)
    return report


def log_status_change(
    db: Session,
    report: Report,
    previous_status: Optional[ReportStatus],
    previous_sub_status: Optional[str],
    changed_by_user_id: Optional[int],
    notes: Optional[str] = None,
) -> ReportStatusHistory:
    row = ReportStatusHistory(
        report_id=report.id,
        previous_status=previous_status,
        new_status=report.status,
        previous_sub_status=previous_sub_status,
        new_sub_status=report.sub_status.value if report.sub_status else None,
        changed_by_user_id=changed_by_user_id,
        notes=notes,
        changed_at=clock.utcnow(),
    )
    db.add(row)
    return row


def log_department_change(
    db: Session,
    report: Report,
    previous_department_id: Optional[int],
    reason: str,
    changed_by_user_id: Optional[int],
) -> DepartmentHistory:
    row = DepartmentHistory(
        report_id=report.id,
        previous_department_id=previous_department_id,
        new_department_id=report.current_department_id,
        reason=reason,
        changed_by_user_id=changed_by_user_id,
        changed_at=clock.utcnow(),
    )
    db.add(row)
    return row


def create_report(
    db: Session,
    principal: Principal,
    title: str,
    department_id: Optional[int] = None,
    category_id: Optional[int] = None,
    report_type: ReportType = ReportType.OTHER,
    description: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    address: Optional[str] = None,
) -> Report:
    title = (title or "").strip()
    if len(title) < 3:
        raise ValidationError("title must be at least 3 characters", field="title")
    if (lat is None) != (lng is None):
        raise ValidationError("lat and lng must be given together", field="lat")
    if lat is not None and not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("coordinates out of range", field="lat")

    with unit_of_work(db):
        category = directory.active_category(db, category_id) if category_id is not None else None
        if department_id is None and category is not None:
            department_id = category.department_id
        if department_id is None:
            raise ValidationError("department_id is required", field="department_id")
        directory.active_department(db, department_id)

        now = clock.utcnow()
        report = Report(
            title=title,
            description=description,
            category_id=category_id,
            report_type=report_type,
            lat=lat,
            lng=lng,
            address=(address or "").strip() or None,
            status=ReportStatus.OPEN,
            current_department_id=department_id,
            user_id=principal.user_id,
            support_count=0,
            reopen_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(report)
        db.flush()
        log_department_change(db, report, None, INITIAL_DEPARTMENT_REASON, principal.user_id)
        log_status_change(db, report, None, None, principal.user_id, "report created")

    logger.info("report %s created by user %s in department %s", report.id, principal.user_id, department_id)
    return report


def delete_report(db: Session, report_id: int, principal: Principal) -> None:
    """Soft delete. The reporter may delete an untouched OPEN report, admins any report."""
    with unit_of_work(db):
        report = get_report(db, report_id, lock=True)
        is_owner = report.user_id == principal.user_id and report.status == ReportStatus.OPEN
        if not (principal.is_admin or is_owner):
            raise AuthorizationError("only the reporter of an open report or an admin may delete it")
        now = clock.utcnow()
        active = assignment_ledger.active_assignment(db, report.id)
        if active:
            assignment_ledger.cancel(db, active.id, "report deleted")
        report.assigned_employee_id = None
        report.deleted_at = now
        report.updated_at = now
    logger.info("report %s soft-deleted by user %s", report_id, principal.user_id)


def get_department_history(db: Session, report_id: int) -> list[DepartmentHistory]:
    get_report(db, report_id)
    return (
        db.query(DepartmentHistory)
        .filter(DepartmentHistory.report_id == report_id)
        .order_by(DepartmentHistory.changed_at.asc(), DepartmentHistory.id.asc())
        .all()
    )


def get_status_history(db: Session, report_id: int) -> list[ReportStatusHistory]:
    get_report(db, report_id)
    return (
        db.query(ReportStatusHistory)
        .filter(ReportStatusHistory.report_id == report_id)
        .order_by(ReportStatusHistory.changed_at.asc(), ReportStatusHistory.id.asc())
        .all()
    )
