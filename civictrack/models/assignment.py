# File: civictrack/models/assignment.py
from __future__ import annotations
from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import String, Enum, DateTime, ForeignKey, Index, CheckConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column
from civictrack.db.base import Base
from civictrack.core.clock import utcnow

class AssigneeType(PyEnum):
    USER = "USER"
    TEAM = "TEAM"

class AssignmentStatus(PyEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        CheckConstraint(
            "(assignee_type = 'USER' AND assignee_user_id IS NOT NULL AND assignee_team_id IS NULL)"
            " OR (assignee_type = 'TEAM' AND assignee_team_id IS NOT NULL AND assignee_user_id IS NULL)",
            name="ck_assignments_assignee_matches_type",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(ForeignKey("reports.id", ondelete="CASCADE"), index=True, nullable=False)

    assignee_type: Mapped[AssigneeType] = mapped_column(Enum(AssigneeType, name="assignee_type"), nullable=False)
    assignee_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=True)
    assignee_team_id: Mapped[int | None] = mapped_column(ForeignKey("teams.id", ondelete="RESTRICT"), index=True, nullable=True)
    assigned_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)

    status: Mapped[AssignmentStatus] = mapped_column(Enum(AssignmentStatus, name="assignment_status"), default=AssignmentStatus.ACTIVE, index=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

# at most one live ACTIVE row per report; the loser of a race fails here
Index(
    "uq_assignments_one_active_per_report",
    Assignment.report_id,
    unique=True,
    postgresql_where=text("status = 'ACTIVE' AND deleted_at IS NULL"),
    sqlite_where=text("status = 'ACTIVE' AND deleted_at IS NULL"),
)
