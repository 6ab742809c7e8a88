# File: civictrack/models/fact_report.py
# Project: civictrack-backend

from __future__ import annotations
from datetime import date, datetime
from enum import Enum as PyEnum
from sqlalchemy import String, Float, Integer, BigInteger, Date, DateTime, Enum, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from civictrack.db.base import Base
from civictrack.core.clock import utcnow

class FactColumns:
    """Column set shared by the live fact table and its staging twin."""

    report_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    created_at_dt: Mapped[date] = mapped_column(Date, nullable=False)
    created_at_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    first_assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_response_duration_secs: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    intervention_duration_secs: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolution_duration_secs: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    support_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    final_status: Mapped[str] = mapped_column(String(50), nullable=False)
    reopen_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # newest source timestamp behind this row, not the refresh wall-clock
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class FactReport(FactColumns, Base):
    __tablename__ = "fact_reports"


class FactReportStaging(FactColumns, Base):
    __tablename__ = "fact_reports_staging"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)


Index("idx_fact_reports_created_dt", FactReport.created_at_dt)
Index("idx_fact_reports_department", FactReport.department_id)
Index("idx_fact_reports_category", FactReport.category_id)
Index("idx_fact_reports_status", FactReport.final_status)
Index("idx_fact_reports_coords", FactReport.latitude, FactReport.longitude)


class RefreshStatus(PyEnum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

class AnalyticsRefreshRun(Base):
    __tablename__ = "analytics_refresh_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    status: Mapped[RefreshStatus] = mapped_column(Enum(RefreshStatus, name="refresh_status"), default=RefreshStatus.RUNNING)
    trigger: Mapped[str] = mapped_column(String(20), default="manual")
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
