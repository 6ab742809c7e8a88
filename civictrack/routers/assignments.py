# File: civictrack/routers/assignments.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from civictrack.db.session import get_db
from civictrack.core.security import Principal, get_principal
from civictrack.schemas.assignment import AssignmentOut
from civictrack.services import assignment_ledger, lifecycle

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.get("/{assignment_id}", response_model=AssignmentOut)
def get_assignment(assignment_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return assignment_ledger.get_assignment(db, assignment_id)


@router.post("/{assignment_id}/accept", response_model=AssignmentOut)
def accept_assignment(assignment_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_principal)):
    return lifecycle.accept_assignment(db, assignment_id, principal)
