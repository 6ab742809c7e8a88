# File: civictrack/schemas/report.py
from pydantic import BaseModel, Field
from typing import Optional, Literal, Any
from datetime import datetime

from civictrack.models.report import ReportStatus, ReportType, SubStatus
from civictrack.models.assignment import AssigneeType

Action = Literal[
    "claim", "assign", "reassign", "request_info", "provide_info", "complete_work",
    "approve", "reject_work", "reject", "reopen", "cancel", "transfer",
]


class ReportCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    department_id: Optional[int] = None
    category_id: Optional[int] = None
    report_type: ReportType = ReportType.OTHER
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    address: Optional[str] = Field(default=None, max_length=300)


class ReportOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    report_type: ReportType
    status: ReportStatus
    sub_status: Optional[SubStatus] = None
    awaiting_info_from: Optional[ReportStatus] = None

    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None

    category_id: Optional[int] = None
    current_department_id: int
    user_id: int
    assigned_employee_id: Optional[int] = None
    closed_by_user_id: Optional[int] = None

    resolved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    resolution_notes: Optional[str] = None
    reopen_count: int = 0
    reopened_at: Optional[datetime] = None
    support_count: int = 0

    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransitionIn(BaseModel):
    """Generic command body; which fields matter depends on the action."""
    action: Action
    reason: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    assignee_type: Optional[AssigneeType] = None
    assignee_id: Optional[int] = None
    target_department_id: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"action"}, exclude_none=True)


class AssignIn(BaseModel):
    assignee_type: AssigneeType
    assignee_id: int
    notes: Optional[str] = Field(default=None, max_length=1000)
    supersede: bool = False


class NotesIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class DepartmentHistoryOut(BaseModel):
    id: int
    report_id: int
    previous_department_id: Optional[int] = None
    new_department_id: int
    reason: str
    changed_by_user_id: Optional[int] = None
    changed_at: datetime

    class Config:
        from_attributes = True


class StatusHistoryOut(BaseModel):
    id: int
    report_id: int
    previous_status: Optional[ReportStatus] = None
    new_status: ReportStatus
    previous_sub_status: Optional[str] = None
    new_sub_status: Optional[str] = None
    changed_by_user_id: Optional[int] = None
    notes: Optional[str] = None
    changed_at: datetime

    class Config:
        from_attributes = True


class SupportOut(BaseModel):
    report_id: int
    support_count: int
    supported: bool
