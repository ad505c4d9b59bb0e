from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status

from app.domain.errors import (
    AuthorizationError,
    CascadeDeleteError,
    ConflictError,
    DependencyFailure,
    InvalidTransitionError,
    NotFoundError,
    TrackerError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[TrackerError], int], ...] = (
    (ValidationError, 422),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DependencyFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def to_http_exception(exc: TrackerError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    detail: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, CascadeDeleteError):
        detail["step"] = exc.step
        detail["deleted_counts"] = exc.deleted_counts
    return HTTPException(status_code=status_code, detail=detail)
