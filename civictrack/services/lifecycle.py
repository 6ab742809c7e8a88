# File: civictrack/services/lifecycle.py
"""
Report lifecycle state machine.

    OPEN -> IN_REVIEW -> IN_PROGRESS -> PENDING_APPROVAL -> DONE
      |         |             |                |
      |         +--> AWAITING_INFORMATION <----+ (returns to where it left)
      +-> CANCELLED                             +-> IN_PROGRESS (work sent back)
    any active state -> REJECTED
    DONE / REJECTED / CANCELLED -> OPEN (reopen)
    transfer: changes department, orthogonal to status

Each command runs as one transaction: the report row is locked, the
capability and structural checks run, then the report update, ledger
changes and audit rows are written together. Any failure rolls the whole
unit back.

Usage:
    from civictrack.services.lifecycle import transition_report

    transition_report(db, report_id, "approve", {"notes": "fixed"}, principal)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from civictrack.core import clock
from civictrack.core.config import settings
from civictrack.core.errors import AuthorizationError, ConflictError, ValidationError
from civictrack.core.security import Principal
from civictrack.db.session import unit_of_work
from civictrack.models.assignment import Assignment, AssigneeType
from civictrack.models.report import ACTIVE_STATUSES, Report, ReportStatus, SubStatus
from civictrack.models.user import UserRole
from civictrack.services import assignment_ledger, directory, reports
from civictrack.services.assignment_ledger import NewAssignment
from civictrack.services.authorization import Capability, require_capability

logger = logging.getLogger(__name__)

REOPEN_REASON = "reopened"


@dataclass(frozen=True)
class Rule:
    sources: frozenset
    capability: Capability
    target: Optional[ReportStatus] = None


S = ReportStatus

TRANSITIONS: dict[str, Rule] = {
    "claim": Rule(frozenset({S.OPEN}), Capability.REVIEW, S.IN_REVIEW),
    "assign": Rule(frozenset({S.OPEN, S.IN_REVIEW}), Capability.ASSIGN, S.IN_PROGRESS),
    "reassign": Rule(frozenset({S.IN_PROGRESS}), Capability.ASSIGN, S.IN_PROGRESS),
    "request_info": Rule(frozenset({S.IN_REVIEW, S.IN_PROGRESS}), Capability.REVIEW, S.AWAITING_INFORMATION),
    "provide_info": Rule(frozenset({S.AWAITING_INFORMATION}), Capability.REVIEW),
    "complete_work": Rule(frozenset({S.IN_PROGRESS}), Capability.WORK, S.PENDING_APPROVAL),
    "approve": Rule(frozenset({S.PENDING_APPROVAL}), Capability.RESOLVE, S.DONE),
    "reject_work": Rule(frozenset({S.PENDING_APPROVAL}), Capability.REJECT, S.IN_PROGRESS),
    "reject": Rule(frozenset(ACTIVE_STATUSES), Capability.REJECT, S.REJECTED),
    "reopen": Rule(frozenset({S.DONE, S.REJECTED, S.CANCELLED}), Capability.REVIEW, S.OPEN),
    "cancel": Rule(frozenset({S.OPEN}), Capability.CANCEL, S.CANCELLED),
    "transfer": Rule(
        frozenset({S.OPEN, S.IN_REVIEW, S.IN_PROGRESS, S.AWAITING_INFORMATION}), Capability.TRANSFER
    ),
}


@dataclass
class TransitionPayload:
    reason: Optional[str] = None
    notes: Optional[str] = None
    assignee_type: Optional[AssigneeType] = None
    assignee_id: Optional[int] = None
    target_department_id: Optional[int] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "TransitionPayload":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        data = dict(data)
        assignee_type = data.pop("assignee_type", None)
        if assignee_type is not None and not isinstance(assignee_type, AssigneeType):
            try:
                assignee_type = AssigneeType(str(assignee_type).upper())
            except ValueError:
                raise ValidationError("assignee_type must be USER or TEAM", field="assignee_type")
        return cls(
            reason=data.pop("reason", None),
            notes=data.pop("notes", None),
            assignee_type=assignee_type,
            assignee_id=data.pop("assignee_id", None),
            target_department_id=data.pop("target_department_id", None),
            extra=data,
        )


def allowed_actions(status: ReportStatus) -> list[str]:
    return sorted(name for name, rule in TRANSITIONS.items() if status in rule.sources)


def can_transition(status: ReportStatus, action: str) -> bool:
    rule = TRANSITIONS.get(action)
    return bool(rule and status in rule.sources)


def _require_reason(reason: Optional[str], field_name: str = "reason") -> str:
    text = (reason or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required", field=field_name)
    limit = settings.rejection_reason_max
    if len(text) > limit:
        raise ValidationError(f"{field_name} must be at most {limit} characters", field=field_name)
    return text


def _sync_assignee_pointer(report: Report, active: Optional[Assignment]) -> None:
    if active is not None and active.assignee_type == AssigneeType.USER:
        report.assigned_employee_id = active.assignee_user_id
    else:
        report.assigned_employee_id = None


def _new_assignment(db: Session, report: Report, payload: TransitionPayload, principal: Principal) -> NewAssignment:
    if payload.assignee_type is None or payload.assignee_id is None:
        raise ValidationError(
            "assignee_type and assignee_id are required",
            details={"assignee_type": "required", "assignee_id": "required"},
        )
    if payload.assignee_type == AssigneeType.TEAM:
        team = directory.get_team(db, payload.assignee_id)
        if not team.is_active:
            raise ValidationError(f"team {team.id} is not active", field="assignee_id")
        if team.department_id != report.current_department_id:
            raise ValidationError("team must belong to the report's department", field="assignee_id")
        accepted = settings.auto_accept_team_assignments
    else:
        user = directory.get_user(db, payload.assignee_id)
        if not user.is_active:
            raise ValidationError(f"user {user.id} is not active", field="assignee_id")
        if user.role != UserRole.TEAM_MEMBER:
            raise ValidationError("only team members can be assigned", field="assignee_id")
        if user.department_id != report.current_department_id:
            raise ValidationError("user must belong to the report's department", field="assignee_id")
        accepted = False
    return NewAssignment(payload.assignee_type, payload.assignee_id, principal.user_id, payload.notes, accepted)


# -- handlers ----------------------------------------------------------------
# Each handler mutates the locked report in place; the caller commits.

def _claim(db, report, payload, principal):
    report.status = S.IN_REVIEW


def _assign(db, report, payload, principal):
    new = _new_assignment(db, report, payload, principal)
    a = assignment_ledger.create_assignment(
        db, report.id, new.assignee_type, new.assignee_id, new.assigned_by_user_id, new.notes, new.accepted
    )
    _sync_assignee_pointer(report, a)
    report.status = S.IN_PROGRESS


def _reassign(db, report, payload, principal):
    new = _new_assignment(db, report, payload, principal)
    a = assignment_ledger.supersede(db, report.id, new)
    _sync_assignee_pointer(report, a)


def _request_info(db, report, payload, principal):
    report.awaiting_info_from = report.status
    report.status = S.AWAITING_INFORMATION


def _provide_info(db, report, payload, principal):
    if settings.awaiting_info_return == "origin" and report.awaiting_info_from is not None:
        target = report.awaiting_info_from
    else:
        target = ReportStatus(settings.awaiting_info_default_status)
    # an active assignment keeps the work with its assignee
    if assignment_ledger.active_assignment(db, report.id) is not None:
        target = S.IN_PROGRESS
    elif target == S.IN_PROGRESS:
        target = S.IN_REVIEW
    report.awaiting_info_from = None
    report.status = target


def _complete_work(db, report, payload, principal):
    active = assignment_ledger.active_assignment(db, report.id)
    if active is None:
        raise ConflictError(f"report {report.id} has no active assignment")
    if not principal.is_admin and not assignment_ledger.is_owned_by(db, active, principal):
        raise AuthorizationError("only the assignee can complete this work")
    assignment_ledger.mark_work_done(active, payload.notes)
    if payload.notes:
        report.resolution_notes = payload.notes
    report.status = S.PENDING_APPROVAL


def _approve(db, report, payload, principal):
    active = assignment_ledger.active_assignment(db, report.id)
    if active is not None:
        assignment_ledger.complete(db, active.id, payload.notes)
    _sync_assignee_pointer(report, None)
    report.status = S.DONE
    report.resolved_at = clock.utcnow()
    report.closed_by_user_id = principal.user_id
    if payload.notes:
        report.resolution_notes = payload.notes


def _reject_work(db, report, payload, principal):
    reason = _require_reason(payload.reason)
    active = assignment_ledger.active_assignment(db, report.id)
    if active is None:
        raise ConflictError(f"report {report.id} has no active assignment")
    assignment_ledger.send_back(active, reason)
    report.rejection_reason = reason
    report.status = S.IN_PROGRESS


def _reject(db, report, payload, principal):
    reason = _require_reason(payload.reason)
    active = assignment_ledger.active_assignment(db, report.id)
    if active is not None:
        assignment_ledger.cancel(db, active.id, f"report rejected: {reason}")
    _sync_assignee_pointer(report, None)
    report.awaiting_info_from = None
    report.rejection_reason = reason
    report.closed_by_user_id = principal.user_id
    report.status = S.REJECTED


def _reopen(db, report, payload, principal):
    # resolved_at / resolution_notes stay: they describe the previous cycle
    report.status = S.OPEN
    report.rejection_reason = None
    report.closed_by_user_id = None
    report.reopen_count = (report.reopen_count or 0) + 1
    report.reopened_at = clock.utcnow()
    reports.log_department_change(db, report, report.current_department_id, REOPEN_REASON, principal.user_id)


def _cancel(db, report, payload, principal):
    if report.user_id != principal.user_id and not principal.is_admin:
        raise AuthorizationError("only the reporter can cancel this report")
    report.closed_by_user_id = principal.user_id
    report.status = S.CANCELLED


def _transfer(db, report, payload, principal):
    if payload.target_department_id is None:
        raise ValidationError("target_department_id is required", field="target_department_id")
    if payload.target_department_id == report.current_department_id:
        raise ValidationError("report is already in the target department", field="target_department_id")
    reason = _require_reason(payload.reason)
    directory.active_department(db, payload.target_department_id, field="target_department_id")

    previous_department_id = report.current_department_id
    report.current_department_id = payload.target_department_id
    report.sub_status = SubStatus.FORWARDED
    reports.log_department_change(db, report, previous_department_id, reason, principal.user_id)

    # assignees belong to the old department
    active = assignment_ledger.active_assignment(db, report.id)
    if active is not None:
        assignment_ledger.cancel(db, active.id, f"report transferred to department {report.current_department_id}: {reason}")
        _sync_assignee_pointer(report, None)
        if report.status == S.IN_PROGRESS:
            report.status = S.IN_REVIEW
        if report.awaiting_info_from == S.IN_PROGRESS:
            report.awaiting_info_from = S.IN_REVIEW


_HANDLERS: dict[str, Callable[[Session, Report, TransitionPayload, Principal], None]] = {
    "claim": _claim,
    "assign": _assign,
    "reassign": _reassign,
    "request_info": _request_info,
    "provide_info": _provide_info,
    "complete_work": _complete_work,
    "approve": _approve,
    "reject_work": _reject_work,
    "reject": _reject,
    "reopen": _reopen,
    "cancel": _cancel,
    "transfer": _transfer,
}


def transition_report(
    db: Session,
    report_id: int,
    action: str,
    payload: Optional[Mapping[str, Any]] = None,
    principal: Optional[Principal] = None,
) -> Report:
    if action not in TRANSITIONS:
        raise ValidationError(f"unknown action '{action}'", field="action")
    return _run_transition(db, report_id, lambda report: action, payload, principal)


def _run_transition(
    db: Session,
    report_id: int,
    choose_action: Callable[[Report], str],
    payload: Optional[Mapping[str, Any]],
    principal: Optional[Principal],
) -> Report:
    """Apply one transition; ``choose_action`` sees the report only after it is locked."""
    if principal is None:
        raise AuthorizationError("an authenticated principal is required")
    data = TransitionPayload.from_mapping(payload)

    with unit_of_work(db, conflict_message=f"report {report_id} was modified concurrently"):
        report = reports.get_report(db, report_id, lock=True)
        action = choose_action(report)
        rule = TRANSITIONS[action]
        require_capability(principal, rule.capability, report)

        if not can_transition(report.status, action):
            if action == "assign" and assignment_ledger.active_assignment(db, report.id) is not None:
                raise ConflictError("report already assigned")
            raise ConflictError(f"cannot {action} report {report_id} in status {report.status.value}")

        previous_status = report.status
        previous_sub_status = report.sub_status.value if report.sub_status else None

        _HANDLERS[action](db, report, data, principal)

        if report.status != previous_status and action != "transfer":
            report.sub_status = None
        report.updated_at = clock.utcnow()
        reports.log_status_change(
            db, report, previous_status, previous_sub_status, principal.user_id,
            data.notes or data.reason or action,
        )

    logger.info(
        "report %s %s: %s -> %s by user %s",
        report_id, action, previous_status.value, report.status.value, principal.user_id,
    )
    return report


# -- named commands ----------------------------------------------------------

def claim_report(db: Session, report_id: int, principal: Principal) -> Report:
    return transition_report(db, report_id, "claim", None, principal)


def assign_report(
    db: Session,
    report_id: int,
    assignee_type: AssigneeType,
    assignee_id: int,
    principal: Principal,
    notes: Optional[str] = None,
    supersede: bool = False,
) -> Report:
    action = "reassign" if supersede else "assign"
    payload = {"assignee_type": assignee_type, "assignee_id": assignee_id, "notes": notes}
    return transition_report(db, report_id, action, payload, principal)


def accept_assignment(db: Session, assignment_id: int, principal: Principal) -> Assignment:
    """Assignee starts work. Report status is unchanged; only ``accepted_at`` is stamped."""
    with unit_of_work(db):
        a = assignment_ledger.get_assignment(db, assignment_id)
        report = reports.get_report(db, a.report_id, lock=True)
        require_capability(principal, Capability.WORK, report)
        a = assignment_ledger.accept(db, assignment_id, principal)
        report.updated_at = clock.utcnow()
    logger.info("assignment %s on report %s accepted by user %s", assignment_id, a.report_id, principal.user_id)
    return a


def complete_work(db: Session, report_id: int, principal: Principal, notes: Optional[str] = None) -> Report:
    return transition_report(db, report_id, "complete_work", {"notes": notes}, principal)


def approve_report(db: Session, report_id: int, principal: Principal, notes: Optional[str] = None) -> Report:
    return transition_report(db, report_id, "approve", {"notes": notes}, principal)


def _reject_action(report: Report) -> str:
    return "reject_work" if report.status == S.PENDING_APPROVAL else "reject"


def reject_report(db: Session, report_id: int, reason: str, principal: Principal) -> Report:
    """Reject the work when it is pending approval, otherwise reject the report itself."""
    return _run_transition(db, report_id, _reject_action, {"reason": reason}, principal)


def transfer_report(
    db: Session, report_id: int, target_department_id: int, reason: str, principal: Principal
) -> Report:
    payload = {"target_department_id": target_department_id, "reason": reason}
    return transition_report(db, report_id, "transfer", payload, principal)


def reopen_report(db: Session, report_id: int, principal: Principal, notes: Optional[str] = None) -> Report:
    return transition_report(db, report_id, "reopen", {"notes": notes}, principal)
