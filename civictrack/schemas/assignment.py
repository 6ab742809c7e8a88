# File: civictrack/schemas/assignment.py
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from civictrack.models.assignment import AssigneeType, AssignmentStatus


class AssignmentOut(BaseModel):
    id: int
    report_id: int
    assignee_type: AssigneeType
    assignee_user_id: Optional[int] = None
    assignee_team_id: Optional[int] = None
    assigned_by_user_id: Optional[int] = None
    status: AssignmentStatus
    notes: Optional[str] = None

    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True
