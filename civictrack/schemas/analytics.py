# File: civictrack/schemas/analytics.py
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from civictrack.models.fact_report import RefreshStatus


class SummaryStatsOut(BaseModel):
    totalReportCount: int
    resolvedCount: int
    resolutionRate: float
    avgResolutionDays: Optional[float] = None
    avgFirstResponseHours: Optional[float] = None
    avgInterventionHours: Optional[float] = None


class FunnelOut(BaseModel):
    total: int
    assigned: int
    resolved: int
    assignmentRate: float
    resolutionRate: float


class BucketOut(BaseModel):
    count: int
    reportIds: list[int] = []


class CategoryShareOut(BaseModel):
    categoryId: Optional[int] = None
    categoryName: str
    count: int
    percentage: float


class PeriodOut(BaseModel):
    period: str
    created: int
    resolved: int


class RefreshRunOut(BaseModel):
    id: int
    status: RefreshStatus
    trigger: str
    row_count: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True
