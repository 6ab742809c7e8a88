# File: civictrack/models/department.py
# Project: civictrack-backend

from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column
from civictrack.db.base import Base
from civictrack.core.clock import utcnow

class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class DepartmentHistory(Base):
    """Append-only. Rows are inserted by the lifecycle service and never updated."""
    __tablename__ = "department_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(ForeignKey("reports.id", ondelete="CASCADE"), index=True, nullable=False)
    # null for the report's first department
    previous_department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id"), nullable=True)
    new_department_id: Mapped[int] = mapped_column(ForeignKey("departments.id"), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    changed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
