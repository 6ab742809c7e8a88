# File: civictrack/services/assignment_ledger.py
"""
Assignment ledger: who is responsible for a report, since when, and how it ended.

Rows move ACTIVE -> COMPLETED or ACTIVE -> CANCELLED and are never reactivated.
At most one live ACTIVE row exists per report; ``create_assignment`` refuses
to stack a second one and ``supersede`` is the only way to reassign. The
partial unique index on ``assignments`` backs this up when two writers race.

These functions only flush; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from civictrack.core import clock
from civictrack.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from civictrack.core.security import Principal
from civictrack.models.assignment import Assignment, AssigneeType, AssignmentStatus
from civictrack.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewAssignment:
    assignee_type: AssigneeType
    assignee_id: int
    assigned_by_user_id: Optional[int]
    notes: Optional[str] = None
    accepted: bool = False


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    combined = f"{existing}\n{note}" if existing else note
    return combined[:1000]


def get_assignment(db: Session, assignment_id: int, lock: bool = False) -> Assignment:
    q = db.query(Assignment).filter(Assignment.id == assignment_id, Assignment.deleted_at.is_(None))
    if lock:
        q = q.with_for_update().populate_existing()
    a = q.first()
    if not a:
        raise NotFoundError("Assignment", assignment_id)
    return a


def active_assignment(db: Session, report_id: int) -> Optional[Assignment]:
    return (
        db.query(Assignment)
        .filter(
            Assignment.report_id == report_id,
            Assignment.status == AssignmentStatus.ACTIVE,
            Assignment.deleted_at.is_(None),
        )
        .first()
    )


def list_assignments(db: Session, report_id: int) -> list[Assignment]:
    return (
        db.query(Assignment)
        .filter(Assignment.report_id == report_id, Assignment.deleted_at.is_(None))
        .order_by(Assignment.assigned_at.asc(), Assignment.id.asc())
        .all()
    )


def _insert(db: Session, report_id: int, new: NewAssignment) -> Assignment:
    if new.assignee_type not in (AssigneeType.USER, AssigneeType.TEAM):
        raise ValidationError("assignee_type must be USER or TEAM", field="assignee_type")
    now = clock.utcnow()
    a = Assignment(
        report_id=report_id,
        assignee_type=new.assignee_type,
        assignee_user_id=new.assignee_id if new.assignee_type == AssigneeType.USER else None,
        assignee_team_id=new.assignee_id if new.assignee_type == AssigneeType.TEAM else None,
        assigned_by_user_id=new.assigned_by_user_id,
        status=AssignmentStatus.ACTIVE,
        notes=new.notes,
        assigned_at=now,
        accepted_at=now if new.accepted else None,
        created_at=now,
        updated_at=now,
    )
    db.add(a)
    db.flush()
    return a


def create_assignment(
    db: Session,
    report_id: int,
    assignee_type: AssigneeType,
    assignee_id: int,
    assigned_by_user_id: Optional[int],
    notes: Optional[str] = None,
    accepted: bool = False,
) -> Assignment:
    if active_assignment(db, report_id):
        raise ConflictError("report already assigned")
    a = _insert(db, report_id, NewAssignment(assignee_type, assignee_id, assigned_by_user_id, notes, accepted))
    logger.info("assignment %s created for report %s (%s %s)", a.id, report_id, assignee_type.value, assignee_id)
    return a


def supersede(db: Session, report_id: int, new: NewAssignment) -> Assignment:
    """Cancel the current ACTIVE row (if any) and insert ``new`` in its place."""
    current = active_assignment(db, report_id)
    if current:
        _cancel(current, "superseded by reassignment")
        # flush the cancellation first so the one-active index never sees two rows
        db.flush()
    a = _insert(db, report_id, new)
    logger.info(
        "assignment %s supersedes %s on report %s",
        a.id, current.id if current else None, report_id,
    )
    return a


def is_owned_by(db: Session, a: Assignment, principal: Principal) -> bool:
    if a.assignee_type == AssigneeType.USER:
        return a.assignee_user_id == principal.user_id
    team_id = principal.team_id
    if team_id is None:
        user = db.get(User, principal.user_id)
        team_id = user.team_id if user else None
    return team_id is not None and a.assignee_team_id == team_id


def accept(db: Session, assignment_id: int, principal: Principal) -> Assignment:
    a = get_assignment(db, assignment_id, lock=True)
    if a.status != AssignmentStatus.ACTIVE:
        raise ConflictError(f"assignment {assignment_id} is {a.status.value}, not ACTIVE")
    if not is_owned_by(db, a, principal):
        raise AuthorizationError("assignment belongs to another user or team")
    if a.accepted_at is not None:
        raise ConflictError(f"assignment {assignment_id} already accepted")
    now = clock.utcnow()
    a.accepted_at = now
    a.updated_at = now
    return a


def mark_work_done(a: Assignment, notes: Optional[str] = None) -> Assignment:
    """Assignee finished; the row stays ACTIVE until a supervisor approves."""
    if a.status != AssignmentStatus.ACTIVE:
        raise ConflictError(f"assignment {a.id} is {a.status.value}, not ACTIVE")
    if a.accepted_at is None:
        raise ConflictError(f"assignment {a.id} has not been accepted")
    now = clock.utcnow()
    a.completed_at = now
    a.notes = _append_note(a.notes, notes)
    a.updated_at = now
    return a


def send_back(a: Assignment, reason: Optional[str] = None) -> Assignment:
    """Work rejected by the supervisor: clear the completion mark, keep ACTIVE."""
    a.completed_at = None
    a.notes = _append_note(a.notes, f"sent back: {reason}" if reason else None)
    a.updated_at = clock.utcnow()
    return a


def complete(db: Session, assignment_id: int, notes: Optional[str] = None) -> Assignment:
    a = get_assignment(db, assignment_id, lock=True)
    if a.status != AssignmentStatus.ACTIVE:
        raise ConflictError(f"assignment {assignment_id} is {a.status.value}, not ACTIVE")
    if a.accepted_at is None:
        raise ConflictError(f"assignment {assignment_id} has not been accepted")
    now = clock.utcnow()
    if a.completed_at is None:
        a.completed_at = now
    a.status = AssignmentStatus.COMPLETED
    a.notes = _append_note(a.notes, notes)
    a.updated_at = now
    return a


def _cancel(a: Assignment, reason: Optional[str]) -> Assignment:
    now = clock.utcnow()
    a.status = AssignmentStatus.CANCELLED
    a.cancelled_at = now
    a.notes = _append_note(a.notes, reason)
    a.updated_at = now
    return a


def cancel(db: Session, assignment_id: int, reason: str) -> Assignment:
    a = get_assignment(db, assignment_id, lock=True)
    if a.status != AssignmentStatus.ACTIVE:
        raise ConflictError(f"assignment {assignment_id} is {a.status.value}, not ACTIVE")
    _cancel(a, reason)
    logger.info("assignment %s on report %s cancelled: %s", a.id, a.report_id, reason)
    return a


# -- derived durations (seconds) ---------------------------------------------

def first_response_secs(created_at: datetime, first_assigned_at: Optional[datetime]) -> Optional[int]:
    """Report creation -> earliest assignment."""
    secs = clock.seconds_between(created_at, first_assigned_at)
    return None if secs is None else max(secs, 0)


def intervention_secs(created_at: datetime, first_accepted_at: Optional[datetime]) -> Optional[int]:
    """Report creation -> earliest acceptance.

    Measured from the report's own creation time, never from an assignment
    row, so it cannot go negative when acceptance precedes a later row.
    """
    secs = clock.seconds_between(created_at, first_accepted_at)
    return None if secs is None else max(secs, 0)


def resolution_secs(created_at: datetime, resolved_at: Optional[datetime]) -> Optional[int]:
    secs = clock.seconds_between(created_at, resolved_at)
    return None if secs is None else max(secs, 0)


def report_durations(db: Session, report) -> dict:
    first_assigned, first_accepted = (
        db.query(func.min(Assignment.assigned_at), func.min(Assignment.accepted_at))
        .filter(Assignment.report_id == report.id, Assignment.deleted_at.is_(None))
        .one()
    )
    return {
        "first_response_duration_secs": first_response_secs(report.created_at, first_assigned),
        "intervention_duration_secs": intervention_secs(report.created_at, first_accepted),
        "resolution_duration_secs": resolution_secs(report.created_at, report.resolved_at),
    }
