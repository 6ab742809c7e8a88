# File: civictrack/routers/analytics.py
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List, Optional

from civictrack.db.session import get_db
from civictrack.core.ratelimit import limiter, REFRESH_LIMIT
from civictrack.core.security import Principal, get_principal
from civictrack.schemas.analytics import (
    SummaryStatsOut,
    FunnelOut,
    BucketOut,
    CategoryShareOut,
    PeriodOut,
    RefreshRunOut,
)
from civictrack.services import analytics_queries as aq
from civictrack.services import analytics_refresh
from civictrack.services.authorization import Capability, require_capability

router = APIRouter(prefix="/analytics", tags=["analytics"])


def filters(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    department_id: Optional[int] = Query(None, alias="departmentId"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    status: Optional[str] = Query(None),
    min_lng: Optional[float] = Query(None, alias="minLng"),
    min_lat: Optional[float] = Query(None, alias="minLat"),
    max_lng: Optional[float] = Query(None, alias="maxLng"),
    max_lat: Optional[float] = Query(None, alias="maxLat"),
    principal: Principal = Depends(get_principal),
) -> aq.AnalyticsFilters:
    f = aq.AnalyticsFilters.parse(
        start_date, end_date, department_id, category_id, status, min_lng, min_lat, max_lng, max_lat
    )
    return f.scoped(principal)


@router.get("/summary", response_model=SummaryStatsOut)
def summary(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_summary_stats(db, f)


@router.get("/counts", response_model=dict[str, BucketOut])
def counts(
    types: Optional[str] = Query(None, description="comma-separated bucket names"),
    f: aq.AnalyticsFilters = Depends(filters),
    db: Session = Depends(get_db),
):
    bucket_types = [t.strip() for t in types.split(",") if t.strip()] if types else None
    return aq.get_counts(db, f, bucket_types)


@router.get("/funnel", response_model=FunnelOut)
def funnel(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_funnel(db, f)


@router.get("/categories", response_model=List[CategoryShareOut])
def categories(
    limit: int = Query(10, ge=1, le=100),
    f: aq.AnalyticsFilters = Depends(filters),
    db: Session = Depends(get_db),
):
    return aq.get_category_distribution(db, f, limit)


@router.get("/temporal", response_model=List[PeriodOut])
def temporal(
    granularity: str = Query("daily"),
    f: aq.AnalyticsFilters = Depends(filters),
    db: Session = Depends(get_db),
):
    return aq.get_temporal_distribution(db, f, granularity)


@router.get("/spatial")
def spatial(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_spatial_distribution(db, f)


@router.get("/heatmap")
def heatmap(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_heatmap(db, f)


@router.get("/clusters")
def clusters(
    cell_size: float = Query(0.01, gt=0, le=1, alias="cellSize"),
    f: aq.AnalyticsFilters = Depends(filters),
    db: Session = Depends(get_db),
):
    return aq.get_cluster_analysis(db, f, cell_size)


@router.get("/reopened")
def reopened(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_reopened_reports(db, f)


@router.get("/trending-category")
def trending_category(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_trending_category(db, f)


@router.get("/citizen-interaction")
def citizen_interaction(f: aq.AnalyticsFilters = Depends(filters), db: Session = Depends(get_db)):
    return aq.get_citizen_interaction(db, f)


@router.get("/dashboard", response_model=dict[str, BucketOut])
def dashboard(db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return aq.get_dashboard_stats(db, principal)


@router.post("/refresh", response_model=RefreshRunOut)
@limiter.limit(REFRESH_LIMIT)
def refresh(request: Request, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    require_capability(principal, Capability.REFRESH_ANALYTICS)
    return analytics_refresh.refresh(db, trigger="manual")


@router.get("/refresh/status")
def refresh_status(db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    require_capability(principal, Capability.VIEW_ANALYTICS)
    return analytics_refresh.get_refresh_status(db)


@router.get("/data-quality")
def data_quality(db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    require_capability(principal, Capability.VIEW_ANALYTICS)
    return analytics_refresh.validate_data_quality(db)
