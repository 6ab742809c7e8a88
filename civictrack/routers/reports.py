# File: civictrack/routers/reports.py
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from typing import List

from civictrack.db.session import get_db
from civictrack.core.ratelimit import limiter, COMMAND_LIMIT
from civictrack.core.security import Principal, get_principal
from civictrack.schemas.report import (
    ReportCreate,
    ReportOut,
    TransitionIn,
    AssignIn,
    NotesIn,
    DepartmentHistoryOut,
    StatusHistoryOut,
    SupportOut,
)
from civictrack.schemas.assignment import AssignmentOut
from civictrack.services import assignment_ledger, lifecycle, reports, support

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(COMMAND_LIMIT)
def create_report(
    request: Request,
    body: ReportCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    return reports.create_report(db, principal, **body.model_dump())


@router.get("/{report_id}", response_model=ReportOut)
def get_report(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return reports.get_report(db, report_id)


@router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_report(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    reports.delete_report(db, report_id, principal)


@router.get("/{report_id}/actions")
def allowed_actions(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    report = reports.get_report(db, report_id)
    return {"status": report.status.value, "actions": lifecycle.allowed_actions(report.status)}


@router.post("/{report_id}/transitions", response_model=ReportOut)
@limiter.limit(COMMAND_LIMIT)
def transition(
    request: Request,
    report_id: int,
    body: TransitionIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    return lifecycle.transition_report(db, report_id, body.action, body.payload(), principal)


@router.post("/{report_id}/assignments", response_model=ReportOut)
@limiter.limit(COMMAND_LIMIT)
def assign(
    request: Request,
    report_id: int,
    body: AssignIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    return lifecycle.assign_report(
        db, report_id, body.assignee_type, body.assignee_id, principal,
        notes=body.notes, supersede=body.supersede,
    )


@router.get("/{report_id}/assignments", response_model=List[AssignmentOut])
def list_assignments(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    reports.get_report(db, report_id)
    return assignment_ledger.list_assignments(db, report_id)


@router.post("/{report_id}/complete", response_model=ReportOut)
def complete_work(
    report_id: int,
    body: NotesIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    return lifecycle.complete_work(db, report_id, principal, notes=body.notes)


@router.post("/{report_id}/support", response_model=SupportOut)
@limiter.limit(COMMAND_LIMIT)
def support_report(
    request: Request,
    report_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    count = support.support_report(db, report_id, principal)
    return {"report_id": report_id, "support_count": count, "supported": True}


@router.delete("/{report_id}/support", response_model=SupportOut)
def unsupport_report(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    count = support.unsupport_report(db, report_id, principal)
    return {"report_id": report_id, "support_count": count, "supported": False}


@router.get("/{report_id}/support", response_model=SupportOut)
def support_state(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    report = reports.get_report(db, report_id)
    return {
        "report_id": report_id,
        "support_count": report.support_count,
        "supported": support.has_supported(db, report_id, principal.user_id),
    }


@router.get("/{report_id}/department-history", response_model=List[DepartmentHistoryOut])
def department_history(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return reports.get_department_history(db, report_id)


@router.get("/{report_id}/status-history", response_model=List[StatusHistoryOut])
def status_history(report_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return reports.get_status_history(db, report_id)
