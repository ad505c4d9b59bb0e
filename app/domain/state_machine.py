from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    UNASSIGNED = "unassigned"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    REJECTED = "rejected"


class UserRole(StrEnum):
    ADMIN = "admin"
    INSPECTOR = "inspector"
    RESPONSIBLE = "responsible"


TERMINAL_STATES: frozenset[TaskStatus] = frozenset({TaskStatus.CLOSED})

# Statuses excluded from overdue/reminder escalation.
INACTIVE_STATES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.CLOSED, TaskStatus.COMPLETED, TaskStatus.REJECTED}
)

_ASSIGNERS = frozenset({UserRole.ADMIN, UserRole.INSPECTOR})
_WORKERS = frozenset({UserRole.ADMIN, UserRole.RESPONSIBLE})
_ADMINS = frozenset({UserRole.ADMIN})

# source -> target -> roles allowed to take the edge. Inspector and responsible
# roles must additionally own the task (inspector_id / responsible_id).
TASK_TRANSITIONS: dict[TaskStatus, dict[TaskStatus, frozenset[UserRole]]] = {
    TaskStatus.UNASSIGNED: {
        TaskStatus.OPEN: _ASSIGNERS,
        TaskStatus.REJECTED: _ADMINS,
    },
    TaskStatus.OPEN: {
        TaskStatus.OPEN: _ASSIGNERS,
        TaskStatus.IN_PROGRESS: _WORKERS,
        TaskStatus.COMPLETED: _WORKERS,
        TaskStatus.REJECTED: _ADMINS,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETED: _WORKERS,
        TaskStatus.REJECTED: _ADMINS,
    },
    TaskStatus.COMPLETED: {
        TaskStatus.CLOSED: _ADMINS,
        TaskStatus.REJECTED: _ADMINS,
    },
    TaskStatus.REJECTED: {
        TaskStatus.IN_PROGRESS: _WORKERS,
        TaskStatus.COMPLETED: _WORKERS,
    },
    TaskStatus.CLOSED: {},
}


def can_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS.get(source, {})


def allowed_roles(source: TaskStatus, target: TaskStatus) -> frozenset[UserRole]:
    return TASK_TRANSITIONS.get(source, {}).get(target, frozenset())


def initial_status(responsible_id: str | None) -> TaskStatus:
    return TaskStatus.OPEN if responsible_id else TaskStatus.UNASSIGNED
