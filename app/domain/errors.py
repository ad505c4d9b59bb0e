from __future__ import annotations


class TrackerError(Exception):
    code = "error"


class ValidationError(TrackerError):
    code = "validation_error"


class AuthorizationError(TrackerError):
    code = "not_authorized"


class InvalidTransitionError(TrackerError):
    code = "invalid_transition"


class ConflictError(TrackerError):
    code = "conflict"


class NotFoundError(TrackerError):
    code = "not_found"


class DependencyFailure(TrackerError):
    code = "dependency_failure"


class CascadeDeleteError(DependencyFailure):
    code = "cascade_delete_failed"

    def __init__(self, message: str, *, step: str, deleted_counts: dict[str, int] | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.deleted_counts = deleted_counts or {}
