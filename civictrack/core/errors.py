# File: civictrack/core/errors.py
"""
Error taxonomy shared by every command and query in the core.

Services raise these; ``civictrack.main`` registers one handler per class so
the HTTP status and body shape are the same on every route.

    ValidationError     422  malformed input, never retried
    ConflictError       409  illegal transition / duplicate / lost race
    NotFoundError       404  missing or soft-deleted record
    AuthorizationError  403  principal lacks the capability or department scope
    DependencyError     503  store unavailable or query timed out
"""

from typing import Any


class CoreError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["errors"] = self.details
        return body


class ValidationError(CoreError):
    """Input failed validation. ``details`` maps field name to message."""

    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None, field: str | None = None) -> None:
        if field and not details:
            details = {field: message}
        super().__init__(message, details)


class ConflictError(CoreError):
    """The operation is structurally illegal for the current state.

    Callers may retry after re-reading the record.
    """

    status_code = 409
    code = "conflict"


class NotFoundError(CoreError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = resource
        if resource_id is not None:
            msg += f" {resource_id}"
        super().__init__(f"{msg} not found")


class AuthorizationError(CoreError):
    status_code = 403
    code = "forbidden"


class DependencyError(CoreError):
    """The backing store failed. Logged by the raiser; retry policy lives outside the core."""

    status_code = 503
    code = "dependency_unavailable"
