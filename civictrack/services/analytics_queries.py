# File: civictrack/services/analytics_queries.py
"""
Read side of the analytics pipeline.

KPI queries (summary, funnel, distributions, trends) read the materialized
``fact_reports`` table. Operational buckets and history-based KPIs read the
live tables because the fact row does not carry them.

An empty window is never an error: every query returns zeros, ``None``
averages or empty lists. Each call runs under ``QUERY_TIMEOUT_MS`` on
PostgreSQL; a timeout fails the whole call with ``DependencyError``.
"""

import functools
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import Numeric, and_, case, cast, exists, func, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from civictrack.core import clock
from civictrack.core.config import settings
from civictrack.core.errors import DependencyError, ValidationError
from civictrack.core.security import Principal
from civictrack.models.assignment import Assignment
from civictrack.models.category import ReportCategory
from civictrack.models.fact_report import FactReport
from civictrack.models.report import ACTIVE_STATUSES, Report, ReportStatus, ReportStatusHistory
from civictrack.services.authorization import analytics_scope

logger = logging.getLogger(__name__)

GRANULARITIES = ("daily", "weekly", "monthly")
HEATMAP_LIMIT = 500
CLUSTER_MIN_REPORTS = 3
CLUSTER_LIMIT = 20
TRENDING_NEW_CATEGORY_GROWTH = 999.99

STATUS_BUCKETS = tuple(s.value for s in ReportStatus)
BUCKETS = ("UNASSIGNED", "OVERDUE", "TOTAL") + STATUS_BUCKETS
DASHBOARD_BUCKETS = ("UNASSIGNED", "PENDING_APPROVAL", "IN_PROGRESS", "OVERDUE", "OPEN", "DONE")


@dataclass(frozen=True)
class AnalyticsFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    department_id: Optional[int] = None
    category_id: Optional[int] = None
    status: Optional[ReportStatus] = None
    # min_lng, min_lat, max_lng, max_lat
    bbox: Optional[tuple[float, float, float, float]] = None
    user_id: Optional[int] = None

    @classmethod
    def parse(
        cls,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        department_id: Optional[int] = None,
        category_id: Optional[int] = None,
        status: Optional[str] = None,
        min_lng: Optional[float] = None,
        min_lat: Optional[float] = None,
        max_lng: Optional[float] = None,
        max_lat: Optional[float] = None,
    ) -> "AnalyticsFilters":
        """Build filters from raw query parameters, defaulting the window to the last SUMMARY_DEFAULT_DAYS."""
        end = _parse_date(end_date, "endDate") or clock.utcnow().date()
        start = _parse_date(start_date, "startDate") or end - timedelta(days=settings.summary_default_days)
        if start > end:
            raise ValidationError("startDate must not be after endDate", field="startDate")

        parsed_status = None
        if status and status.lower() != "all":
            try:
                parsed_status = ReportStatus(status.upper())
            except ValueError:
                raise ValidationError(f"unknown status '{status}'", field="status")

        corners = (min_lng, min_lat, max_lng, max_lat)
        bbox = None
        if any(c is not None for c in corners):
            if any(c is None for c in corners):
                raise ValidationError("bounding box needs minLng, minLat, maxLng and maxLat", field="bbox")
            if min_lng > max_lng or min_lat > max_lat:
                raise ValidationError("bounding box minimum exceeds maximum", field="bbox")
            bbox = (float(min_lng), float(min_lat), float(max_lng), float(max_lat))

        return cls(start, end, department_id, category_id, parsed_status, bbox)

    def scoped(self, principal: Optional[Principal]) -> "AnalyticsFilters":
        department_id, user_id = analytics_scope(principal, self.department_id)
        return replace(self, department_id=department_id, user_id=user_id)

    def window_days(self) -> int:
        return (self.end_date - self.start_date).days + 1


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(value).date() if "T" in value else date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date", field=field)


def bounded_query(fn):
    """Apply the statement timeout and map driver failures to ``DependencyError``."""

    @functools.wraps(fn)
    def wrapper(db: Session, *args, **kwargs):
        timed = db.get_bind().dialect.name == "postgresql" and bool(settings.query_timeout_ms)
        try:
            if timed:
                db.execute(text(f"SET LOCAL statement_timeout = {int(settings.query_timeout_ms)}"))
            result = fn(db, *args, **kwargs)
        except OperationalError as e:
            db.rollback()
            logger.warning("analytics query %s failed: %s", fn.__name__, e.orig)
            raise DependencyError("analytics query failed or timed out") from e
        if timed:
            # ends the read transaction so SET LOCAL does not leak
            db.rollback()
        return result

    return wrapper


# -- filter application -------------------------------------------------------

def _fact_filtered(q, f: AnalyticsFilters):
    if f.start_date is not None:
        q = q.filter(FactReport.created_at_dt >= f.start_date)
    if f.end_date is not None:
        q = q.filter(FactReport.created_at_dt <= f.end_date)
    if f.department_id is not None:
        q = q.filter(FactReport.department_id == f.department_id)
    if f.category_id is not None:
        q = q.filter(FactReport.category_id == f.category_id)
    if f.status is not None:
        q = q.filter(FactReport.final_status == f.status.value)
    if f.user_id is not None:
        q = q.filter(FactReport.user_id == f.user_id)
    if f.bbox is not None:
        min_lng, min_lat, max_lng, max_lat = f.bbox
        q = q.filter(
            FactReport.longitude.between(min_lng, max_lng),
            FactReport.latitude.between(min_lat, max_lat),
        )
    return q


def _live_filtered(q, f: AnalyticsFilters):
    q = q.filter(Report.deleted_at.is_(None))
    if f.start_date is not None:
        q = q.filter(Report.created_at >= clock.start_of_day(f.start_date))
    if f.end_date is not None:
        q = q.filter(Report.created_at <= clock.end_of_day(f.end_date))
    if f.department_id is not None:
        q = q.filter(Report.current_department_id == f.department_id)
    if f.category_id is not None:
        q = q.filter(Report.category_id == f.category_id)
    if f.status is not None:
        q = q.filter(Report.status == f.status)
    if f.user_id is not None:
        q = q.filter(Report.user_id == f.user_id)
    if f.bbox is not None:
        min_lng, min_lat, max_lng, max_lat = f.bbox
        q = q.filter(Report.lng.between(min_lng, max_lng), Report.lat.between(min_lat, max_lat))
    return q


def _round(value, digits: int = 2) -> Optional[float]:
    return None if value is None else round(float(value), digits)


def _category_names(db: Session, ids: Iterable[Optional[int]]) -> dict[int, str]:
    ids = {i for i in ids if i is not None}
    if not ids:
        return {}
    return dict(db.query(ReportCategory.id, ReportCategory.name).filter(ReportCategory.id.in_(ids)).all())


# -- KPI queries over the fact table ------------------------------------------

@bounded_query
def get_summary_stats(db: Session, f: AnalyticsFilters) -> dict[str, Any]:
    total, resolved, avg_resolution, avg_first_response, avg_intervention = _fact_filtered(
        db.query(
            func.count(FactReport.report_id),
            func.coalesce(func.sum(case((FactReport.final_status == ReportStatus.DONE.value, 1), else_=0)), 0),
            func.avg(FactReport.resolution_duration_secs),
            func.avg(FactReport.first_response_duration_secs),
            func.avg(FactReport.intervention_duration_secs),
        ),
        f,
    ).one()

    resolved = int(resolved)
    # AVG skips NULLs, so reports without the event never count as zero
    return {
        "totalReportCount": total,
        "resolvedCount": resolved,
        "resolutionRate": round(resolved / total * 100, 2) if total else 0,
        "avgResolutionDays": _round(avg_resolution / 86400) if avg_resolution is not None else None,
        "avgFirstResponseHours": _round(avg_first_response / 3600) if avg_first_response is not None else None,
        "avgInterventionHours": _round(avg_intervention / 3600) if avg_intervention is not None else None,
    }


@bounded_query
def get_funnel(db: Session, f: AnalyticsFilters) -> dict[str, Any]:
    assigned_expr = FactReport.first_assigned_at.isnot(None)
    total, assigned, resolved = _fact_filtered(
        db.query(
            func.count(FactReport.report_id),
            func.coalesce(func.sum(case((assigned_expr, 1), else_=0)), 0),
            func.coalesce(
                func.sum(case((and_(assigned_expr, FactReport.final_status == ReportStatus.DONE.value), 1), else_=0)),
                0,
            ),
        ),
        f,
    ).one()
    total, assigned, resolved = int(total), int(assigned), int(resolved)
    return {
        "total": total,
        "assigned": assigned,
        "resolved": resolved,
        "assignmentRate": round(assigned / total * 100, 2) if total else 0,
        "resolutionRate": round(resolved / assigned * 100, 2) if assigned else 0,
    }


@bounded_query
def get_category_distribution(db: Session, f: AnalyticsFilters, limit: int = 10) -> list[dict[str, Any]]:
    if limit < 1:
        raise ValidationError("limit must be positive", field="limit")
    total = _fact_filtered(db.query(func.count(FactReport.report_id)), f).scalar() or 0
    rows = (
        _fact_filtered(db.query(FactReport.category_id, func.count(FactReport.report_id)), f)
        .group_by(FactReport.category_id)
        .order_by(func.count(FactReport.report_id).desc(), FactReport.category_id.asc())
        .limit(limit)
        .all()
    )
    names = _category_names(db, (c for c, _ in rows))
    return [
        {
            "categoryId": category_id,
            "categoryName": names.get(category_id, "Uncategorized"),
            "count": count,
            "percentage": round(count / total * 100, 2) if total else 0,
        }
        for category_id, count in rows
    ]


def _bucket_start(d: date, granularity: str) -> date:
    if granularity == "weekly":
        return d - timedelta(days=d.weekday())
    if granularity == "monthly":
        return d.replace(day=1)
    return d


def _next_bucket(d: date, granularity: str) -> date:
    if granularity == "weekly":
        return d + timedelta(days=7)
    if granularity == "monthly":
        return (d.replace(day=28) + timedelta(days=4)).replace(day=1)
    return d + timedelta(days=1)


@bounded_query
def get_temporal_distribution(db: Session, f: AnalyticsFilters, granularity: str = "daily") -> list[dict[str, Any]]:
    if granularity not in GRANULARITIES:
        raise ValidationError(f"granularity must be one of {', '.join(GRANULARITIES)}", field="granularity")
    if f.start_date is None or f.end_date is None:
        f = replace(f, start_date=f.start_date or AnalyticsFilters.parse().start_date,
                    end_date=f.end_date or clock.utcnow().date())

    rows = (
        _fact_filtered(
            db.query(
                FactReport.created_at_dt,
                func.count(FactReport.report_id),
                func.coalesce(func.sum(case((FactReport.final_status == ReportStatus.DONE.value, 1), else_=0)), 0),
            ),
            f,
        )
        .group_by(FactReport.created_at_dt)
        .all()
    )

    created: dict[date, int] = defaultdict(int)
    resolved: dict[date, int] = defaultdict(int)
    for day, n_created, n_resolved in rows:
        key = _bucket_start(day, granularity)
        created[key] += n_created
        resolved[key] += int(n_resolved)

    out = []
    cursor = _bucket_start(f.start_date, granularity)
    while cursor <= f.end_date:
        out.append({"period": cursor.isoformat(), "created": created.get(cursor, 0), "resolved": resolved.get(cursor, 0)})
        cursor = _next_bucket(cursor, granularity)
    return out


@bounded_query
def get_spatial_distribution(db: Session, f: AnalyticsFilters) -> list[dict[str, Any]]:
    rows = (
        _fact_filtered(
            db.query(
                FactReport.report_id, FactReport.latitude, FactReport.longitude,
                FactReport.final_status, FactReport.category_id, FactReport.support_count,
            ),
            f,
        )
        .filter(FactReport.latitude.isnot(None), FactReport.longitude.isnot(None))
        .order_by(FactReport.created_at_ts.desc(), FactReport.report_id.desc())
        .limit(settings.spatial_result_limit)
        .all()
    )
    return [
        {
            "reportId": rid, "latitude": lat, "longitude": lng,
            "status": status, "categoryId": category_id, "supportCount": supports,
        }
        for rid, lat, lng, status, category_id, supports in rows
    ]


@bounded_query
def get_heatmap(db: Session, f: AnalyticsFilters, precision: int = 4) -> list[dict[str, Any]]:
    lat = func.round(cast(FactReport.latitude, Numeric), precision)
    lng = func.round(cast(FactReport.longitude, Numeric), precision)
    count = func.count(FactReport.report_id)
    rows = (
        _fact_filtered(db.query(lat, lng, count, func.avg(FactReport.support_count)), f)
        .filter(FactReport.latitude.isnot(None), FactReport.longitude.isnot(None))
        .group_by(lat, lng)
        .order_by(count.desc())
        .limit(HEATMAP_LIMIT)
        .all()
    )
    return [
        {
            "latitude": float(la), "longitude": float(ln), "count": n,
            "weight": round(n + float(avg_support or 0), 2),
        }
        for la, ln, n, avg_support in rows
    ]


@bounded_query
def get_cluster_analysis(db: Session, f: AnalyticsFilters, cell_size: float = 0.01) -> list[dict[str, Any]]:
    """Grid clustering: reports sharing a ``cell_size``-degree cell form a cluster when there are at least three."""
    if cell_size <= 0:
        raise ValidationError("cell_size must be positive", field="cell_size")
    points = (
        _fact_filtered(
            db.query(FactReport.report_id, FactReport.latitude, FactReport.longitude, FactReport.category_id), f
        )
        .filter(FactReport.latitude.isnot(None), FactReport.longitude.isnot(None))
        .all()
    )

    cells: dict[tuple[int, int], list] = defaultdict(list)
    for rid, lat, lng, category_id in points:
        cells[(math.floor(lat / cell_size), math.floor(lng / cell_size))].append((rid, lat, lng, category_id))

    clusters = []
    for members in cells.values():
        if len(members) < CLUSTER_MIN_REPORTS:
            continue
        categories: dict[Optional[int], int] = defaultdict(int)
        for m in members:
            categories[m[3]] += 1
        dominant = max(categories.items(), key=lambda kv: (kv[1], -(kv[0] or 0)))[0]
        clusters.append({
            "centerLatitude": round(sum(m[1] for m in members) / len(members), 6),
            "centerLongitude": round(sum(m[2] for m in members) / len(members), 6),
            "count": len(members),
            "dominantCategoryId": dominant,
            "reportIds": sorted(m[0] for m in members),
        })

    clusters.sort(key=lambda c: (-c["count"], c["reportIds"][0]))
    return clusters[:CLUSTER_LIMIT]


@bounded_query
def get_trending_category(db: Session, f: AnalyticsFilters) -> Optional[dict[str, Any]]:
    """Category with the largest growth against the window of equal length just before ``f``."""
    if f.start_date is None or f.end_date is None:
        raise ValidationError("trending needs a date window", field="startDate")
    span = f.window_days()
    previous = replace(f, start_date=f.start_date - timedelta(days=span), end_date=f.start_date - timedelta(days=1))

    def counts(window: AnalyticsFilters) -> dict[Optional[int], int]:
        return dict(
            _fact_filtered(db.query(FactReport.category_id, func.count(FactReport.report_id)), window)
            .filter(FactReport.category_id.isnot(None))
            .group_by(FactReport.category_id)
            .all()
        )

    current_counts, previous_counts = counts(f), counts(previous)
    best = None
    for category_id, current in current_counts.items():
        before = previous_counts.get(category_id, 0)
        growth = TRENDING_NEW_CATEGORY_GROWTH if before == 0 else round((current - before) / before * 100, 2)
        key = (growth, current, -category_id)
        if best is None or key > best[0]:
            best = (key, category_id, current, before, growth)

    if best is None:
        return None
    _, category_id, current, before, growth = best
    return {
        "categoryId": category_id,
        "categoryName": _category_names(db, [category_id]).get(category_id, "Uncategorized"),
        "currentCount": current,
        "previousCount": before,
        "growthPercentage": growth,
    }


@bounded_query
def get_citizen_interaction(db: Session, f: AnalyticsFilters) -> dict[str, Any]:
    reports, supports = _fact_filtered(
        db.query(func.count(FactReport.report_id), func.coalesce(func.sum(FactReport.support_count), 0)), f
    ).one()
    return {
        "totalSupports": int(supports),
        "reportCount": reports,
        "avgSupportPerReport": round(int(supports) / reports, 2) if reports else 0,
    }


# -- live-table queries -------------------------------------------------------

def _bucket_predicate(bucket: str):
    if bucket == "TOTAL":
        return None
    if bucket == "UNASSIGNED":
        has_assignment = exists().where(Assignment.report_id == Report.id, Assignment.deleted_at.is_(None))
        return and_(Report.status == ReportStatus.OPEN, ~has_assignment)
    if bucket == "OVERDUE":
        cutoff = clock.utcnow() - timedelta(days=settings.overdue_days)
        return and_(Report.status.in_(ACTIVE_STATUSES), Report.created_at < cutoff)
    return Report.status == ReportStatus(bucket)


@bounded_query
def get_counts(db: Session, f: AnalyticsFilters, bucket_types: Optional[Iterable[str]] = None) -> dict[str, Any]:
    """Named operational buckets with drill-down ids. Unknown bucket names are a ValidationError."""
    buckets = [b.upper() for b in bucket_types] if bucket_types else list(BUCKETS)
    unknown = [b for b in buckets if b not in BUCKETS]
    if unknown:
        raise ValidationError(f"unknown bucket type(s): {', '.join(unknown)}", field="types")

    out = {}
    for bucket in buckets:
        q = _live_filtered(db.query(Report.id), f)
        predicate = _bucket_predicate(bucket)
        if predicate is not None:
            q = q.filter(predicate)
        ids = [rid for (rid,) in q.order_by(Report.id.asc()).all()]
        out[bucket] = {"count": len(ids), "reportIds": ids}
    return out


@bounded_query
def get_reopened_reports(db: Session, f: AnalyticsFilters) -> dict[str, Any]:
    """Reports that reached DONE at some point and are not DONE now."""
    was_done = exists().where(
        ReportStatusHistory.report_id == Report.id, ReportStatusHistory.new_status == ReportStatus.DONE
    )
    ever_done = _live_filtered(db.query(func.count(Report.id)), replace(f, status=None)).filter(was_done).scalar() or 0
    ids = [
        rid
        for (rid,) in _live_filtered(db.query(Report.id), f)
        .filter(was_done, Report.status != ReportStatus.DONE)
        .order_by(Report.id.asc())
        .all()
    ]
    return {
        "count": len(ids),
        "reportIds": ids,
        "reopenRate": round(len(ids) / ever_done * 100, 2) if ever_done else 0,
    }


def get_dashboard_stats(db: Session, principal: Optional[Principal]) -> dict[str, Any]:
    """Operational counters for the landing dashboard; not limited to a date window."""
    f = AnalyticsFilters().scoped(principal)
    return get_counts(db, f, DASHBOARD_BUCKETS)
