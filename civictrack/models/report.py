# File: civictrack/models/report.py
from __future__ import annotations
from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import String, Float, Enum, Integer, DateTime, ForeignKey, func, Index
from sqlalchemy.orm import Mapped, mapped_column
from civictrack.db.base import Base
from civictrack.core.clock import utcnow

class ReportStatus(PyEnum):
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_INFORMATION = "AWAITING_INFORMATION"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    DONE = "DONE"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = frozenset({ReportStatus.DONE, ReportStatus.REJECTED, ReportStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(s for s in ReportStatus if s not in TERMINAL_STATUSES)

class SubStatus(PyEnum):
    FORWARDED = "FORWARDED"

class ReportType(PyEnum):
    POTHOLE = "POTHOLE"
    ROAD_DAMAGE = "ROAD_DAMAGE"
    STREETLIGHT = "STREETLIGHT"
    GARBAGE = "GARBAGE"
    WATER_LEAK = "WATER_LEAK"
    PARK_DAMAGE = "PARK_DAMAGE"
    OTHER = "OTHER"

class Report(Base):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), index=True)
    description: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    # WGS84 (SRID 4326) point, kept as two columns
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    address: Mapped[str | None] = mapped_column(String(300), nullable=True)

    category_id: Mapped[int | None] = mapped_column(ForeignKey("report_categories.id", ondelete="SET NULL"), index=True, nullable=True)
    report_type: Mapped[ReportType] = mapped_column(Enum(ReportType, name="report_type"), default=ReportType.OTHER)

    status: Mapped[ReportStatus] = mapped_column(Enum(ReportStatus, name="report_status"), default=ReportStatus.OPEN, index=True)
    sub_status: Mapped[SubStatus | None] = mapped_column(Enum(SubStatus, name="report_sub_status"), nullable=True)
    # state to return to when leaving AWAITING_INFORMATION
    awaiting_info_from: Mapped[ReportStatus | None] = mapped_column(Enum(ReportStatus, name="report_status"), nullable=True)
    current_department_id: Mapped[int] = mapped_column(ForeignKey("departments.id"), index=True, nullable=False)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    reopen_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    assigned_employee_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True, nullable=True)
    closed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    support_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

Index("ix_reports_lat_lng", Report.lat, Report.lng)
Index("ix_reports_department_status", Report.current_department_id, Report.status)


class ReportStatusHistory(Base):
    __tablename__ = "report_status_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(ForeignKey("reports.id", ondelete="CASCADE"), index=True, nullable=False)
    previous_status: Mapped[ReportStatus | None] = mapped_column(Enum(ReportStatus, name="report_status"), nullable=True)
    new_status: Mapped[ReportStatus] = mapped_column(Enum(ReportStatus, name="report_status"), nullable=False)
    previous_sub_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_sub_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    changed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
