# File: civictrack/services/analytics_refresh.py
"""
Analytics materialization: rebuild ``fact_reports`` from the live tables.

A refresh computes every fact row in Python, writes them into
``fact_reports_staging`` under the run id, and then replaces the live fact
table from staging inside a single transaction. Readers either see the old
snapshot or the new one. A failed or cancelled run never reaches the swap,
so the previous snapshot stays queryable.

Refresh is never called from the write path; it runs on demand
(``POST /analytics/refresh``) or from the background scheduler.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, insert, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from civictrack.core import clock
from civictrack.core.errors import DependencyError
from civictrack.models.assignment import Assignment
from civictrack.models.fact_report import (
    AnalyticsRefreshRun,
    FactReport,
    FactReportStaging,
    RefreshStatus,
)
from civictrack.models.report import Report, ReportStatus
from civictrack.models.report_support import ReportSupport
from civictrack.services import assignment_ledger

logger = logging.getLogger(__name__)

FACT_COLUMNS = [c.name for c in FactReport.__table__.columns]

# advisory lock key held while the fact table is swapped
REFRESH_LOCK_KEY = 7_314_002


class RefreshCancelled(Exception):
    pass


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [clock.as_utc(v) for v in values if v is not None]
    return max(present) if present else None


def build_fact_row(
    report: Report,
    first_assigned_at: Optional[datetime] = None,
    first_accepted_at: Optional[datetime] = None,
    support_count: int = 0,
    source_updated_at: Optional[datetime] = None,
) -> dict[str, Any]:
    """Derive one fact row from a report and its aggregated ledger data.

    Only the latest cycle is represented: a reopened report carries no
    resolution duration until it is DONE again.
    """
    created_at = clock.as_utc(report.created_at)
    first_assigned_at = clock.as_utc(first_assigned_at)
    first_accepted_at = clock.as_utc(first_accepted_at)
    resolved_at = report.resolved_at if report.status == ReportStatus.DONE else None

    return {
        "report_id": report.id,
        "created_at_dt": created_at.date(),
        "created_at_ts": created_at,
        "department_id": report.current_department_id,
        "category_id": report.category_id,
        "user_id": report.user_id,
        "first_assigned_at": first_assigned_at,
        "first_accepted_at": first_accepted_at,
        "first_response_duration_secs": assignment_ledger.first_response_secs(created_at, first_assigned_at),
        "intervention_duration_secs": assignment_ledger.intervention_secs(created_at, first_accepted_at),
        "resolution_duration_secs": assignment_ledger.resolution_secs(created_at, resolved_at),
        "support_count": support_count,
        "final_status": report.status.value,
        "reopen_count": report.reopen_count or 0,
        "latitude": report.lat,
        "longitude": report.lng,
        "last_updated_at": _latest(report.created_at, report.updated_at, source_updated_at) or created_at,
    }


def compute_fact_rows(db: Session) -> list[dict[str, Any]]:
    assignment_stats = {
        report_id: (assigned, accepted, touched)
        for report_id, assigned, accepted, touched in (
            db.query(
                Assignment.report_id,
                func.min(Assignment.assigned_at),
                func.min(Assignment.accepted_at),
                func.max(Assignment.updated_at),
            )
            .filter(Assignment.deleted_at.is_(None))
            .group_by(Assignment.report_id)
            .all()
        )
    }
    support_stats = {
        report_id: (count, touched)
        for report_id, count, touched in (
            db.query(ReportSupport.report_id, func.count(ReportSupport.id), func.max(ReportSupport.created_at))
            .group_by(ReportSupport.report_id)
            .all()
        )
    }

    rows = []
    for report in db.query(Report).filter(Report.deleted_at.is_(None)).order_by(Report.id.asc()).all():
        assigned, accepted, assignment_touched = assignment_stats.get(report.id, (None, None, None))
        supports, support_touched = support_stats.get(report.id, (0, None))
        rows.append(
            build_fact_row(
                report,
                first_assigned_at=assigned,
                first_accepted_at=accepted,
                support_count=supports,
                source_updated_at=_latest(assignment_touched, support_touched),
            )
        )
    return rows


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RefreshCancelled()


def _clear_staging(db: Session, run_id: int) -> None:
    db.query(FactReportStaging).filter(FactReportStaging.run_id == run_id).delete(synchronize_session=False)


def _finish_run(db: Session, run_id: int, status: RefreshStatus, error: Optional[str] = None) -> None:
    try:
        _clear_staging(db, run_id)
        run = db.get(AnalyticsRefreshRun, run_id)
        run.status = status
        run.error = error[:1000] if error else None
        run.finished_at = clock.utcnow()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("could not record outcome of analytics refresh run %s", run_id, exc_info=True)


def refresh(
    db: Session,
    trigger: str = "manual",
    cancel_event: Optional[threading.Event] = None,
) -> AnalyticsRefreshRun:
    """Rebuild the fact table. Returns the finished run record.

    Raises ``DependencyError`` when the database fails; the previous snapshot
    is kept in that case.
    """
    run = AnalyticsRefreshRun(status=RefreshStatus.RUNNING, trigger=trigger, started_at=clock.utcnow())
    db.add(run)
    db.commit()
    run_id = run.id
    logger.info("analytics refresh %s started (trigger=%s)", run_id, trigger)

    try:
        rows = compute_fact_rows(db)
        _check_cancelled(cancel_event)

        if rows:
            db.execute(insert(FactReportStaging), [dict(row, run_id=run_id) for row in rows])
        db.commit()
        _check_cancelled(cancel_event)

        # swap: both statements commit together, one swap at a time
        _lock_fact_table(db)
        db.query(FactReport).delete(synchronize_session=False)
        staged = select(*[getattr(FactReportStaging, name) for name in FACT_COLUMNS]).where(
            FactReportStaging.run_id == run_id
        )
        db.execute(insert(FactReport).from_select(FACT_COLUMNS, staged))
        _clear_staging(db, run_id)

        run = db.get(AnalyticsRefreshRun, run_id)
        run.status = RefreshStatus.SUCCEEDED
        run.row_count = len(rows)
        run.finished_at = clock.utcnow()
        db.commit()
    except RefreshCancelled:
        db.rollback()
        logger.warning("analytics refresh %s cancelled before swap; previous snapshot kept", run_id)
        _finish_run(db, run_id, RefreshStatus.CANCELLED, "cancelled")
        return db.get(AnalyticsRefreshRun, run_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("analytics refresh %s failed; previous snapshot kept", run_id, exc_info=True)
        _finish_run(db, run_id, RefreshStatus.FAILED, str(e))
        raise DependencyError("analytics refresh failed") from e
    except Exception as e:
        db.rollback()
        logger.error("analytics refresh %s failed; previous snapshot kept", run_id, exc_info=True)
        _finish_run(db, run_id, RefreshStatus.FAILED, str(e))
        raise

    logger.info("analytics refresh %s finished: %s fact rows", run_id, run.row_count)
    return run


def _lock_fact_table(db: Session) -> None:
    """Serialize concurrent swaps. The lock is released when the swap commits."""
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": REFRESH_LOCK_KEY})


def last_run(db: Session, status: Optional[RefreshStatus] = None) -> Optional[AnalyticsRefreshRun]:
    q = db.query(AnalyticsRefreshRun)
    if status is not None:
        q = q.filter(AnalyticsRefreshRun.status == status)
    return q.order_by(AnalyticsRefreshRun.id.desc()).first()


def get_refresh_status(db: Session) -> dict[str, Any]:
    last_updated = db.query(func.max(FactReport.last_updated_at)).scalar()
    source_count = db.query(func.count(Report.id)).filter(Report.deleted_at.is_(None)).scalar() or 0
    target_count = db.query(func.count(FactReport.report_id)).scalar() or 0
    run = last_run(db)
    succeeded = last_run(db, RefreshStatus.SUCCEEDED)
    return {
        "lastUpdated": clock.as_utc(last_updated),
        "sourceCount": source_count,
        "targetCount": target_count,
        "isInSync": source_count == target_count,
        "lastRun": None if run is None else {
            "id": run.id,
            "status": run.status.value,
            "trigger": run.trigger,
            "rowCount": run.row_count,
            "error": run.error,
            "startedAt": clock.as_utc(run.started_at),
            "finishedAt": clock.as_utc(run.finished_at),
        },
        "lastSucceededAt": clock.as_utc(succeeded.finished_at) if succeeded else None,
    }


def validate_data_quality(db: Session) -> dict[str, Any]:
    checks = [
        (
            "No null report IDs",
            "null report IDs",
            db.query(func.count()).select_from(FactReport).filter(FactReport.report_id.is_(None)),
        ),
        (
            "Valid date fields",
            "invalid dates",
            db.query(func.count()).select_from(FactReport).filter(
                or_(FactReport.created_at_dt.is_(None), FactReport.created_at_ts.is_(None))
            ),
        ),
        (
            "Reasonable duration values",
            "negative durations",
            db.query(func.count()).select_from(FactReport).filter(
                or_(
                    FactReport.resolution_duration_secs < 0,
                    FactReport.first_response_duration_secs < 0,
                    FactReport.intervention_duration_secs < 0,
                )
            ),
        ),
        (
            "Valid coordinates",
            "invalid coordinates",
            db.query(func.count()).select_from(FactReport).filter(
                or_(
                    FactReport.latitude < -90, FactReport.latitude > 90,
                    FactReport.longitude < -180, FactReport.longitude > 180,
                )
            ),
        ),
    ]

    results = []
    passed = 0
    for name, noun, q in checks:
        bad = q.scalar() or 0
        ok = bad == 0
        passed += ok
        results.append({"check": name, "passed": ok, "details": None if ok else f"Found {bad} {noun}"})

    return {"validationResults": results, "overallScore": passed / len(checks) * 100}
