# File: civictrack/services/authorization.py
"""
Capability checks called at the top of every command handler.

Who may do what is decided here; whether the report can structurally make the
move is decided by the lifecycle transition table. Keeping the two apart lets
the state machine be exercised without a web framework.
"""

from enum import Enum as PyEnum
from typing import Optional

from civictrack.core.errors import AuthorizationError
from civictrack.core.security import Principal
from civictrack.models.report import Report
from civictrack.models.user import UserRole


class Capability(PyEnum):
    ASSIGN = "assign"
    REVIEW = "review"
    RESOLVE = "resolve"
    REJECT = "reject"
    TRANSFER = "transfer"
    WORK = "work"
    SUPPORT = "support"
    CANCEL = "cancel"
    REFRESH_ANALYTICS = "refresh_analytics"
    VIEW_ANALYTICS = "view_analytics"


_SUPERVISOR = {
    Capability.ASSIGN, Capability.REVIEW, Capability.RESOLVE, Capability.REJECT,
    Capability.TRANSFER, Capability.VIEW_ANALYTICS, Capability.SUPPORT,
}

ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.CITIZEN: frozenset({Capability.SUPPORT, Capability.CANCEL}),
    UserRole.TEAM_MEMBER: frozenset({Capability.WORK, Capability.SUPPORT, Capability.VIEW_ANALYTICS}),
    UserRole.DEPARTMENT_SUPERVISOR: frozenset(_SUPERVISOR),
    UserRole.SYSTEM_ADMIN: frozenset(Capability),
}

# staff roles only act inside their own department
_DEPARTMENT_SCOPED = (UserRole.TEAM_MEMBER, UserRole.DEPARTMENT_SUPERVISOR)
_UNSCOPED = {Capability.SUPPORT, Capability.CANCEL}


def capabilities_of(principal: Principal) -> frozenset[Capability]:
    caps: set[Capability] = set()
    for role in principal.roles:
        caps |= ROLE_CAPABILITIES.get(role, frozenset())
    return frozenset(caps)


def require_capability(principal: Principal, capability: Capability, report: Optional[Report] = None) -> None:
    if capability not in capabilities_of(principal):
        raise AuthorizationError(f"missing capability '{capability.value}'")
    if report is None or principal.is_admin or capability in _UNSCOPED:
        return
    if principal.has_role(*_DEPARTMENT_SCOPED) and principal.department_id != report.current_department_id:
        raise AuthorizationError("report belongs to another department")


def analytics_scope(principal: Optional[Principal], department_id: Optional[int]) -> tuple[Optional[int], Optional[int]]:
    """Return the (department_id, reporter user_id) a principal may query.

    Admins see whatever they asked for, staff are pinned to their department,
    citizens only see their own reports. Staff without a department see nothing.
    """
    if principal is None or principal.is_admin:
        return department_id, None
    if principal.has_role(*_DEPARTMENT_SCOPED):
        if principal.department_id is None:
            raise AuthorizationError("staff account has no department")
        return principal.department_id, None
    return department_id, principal.user_id
