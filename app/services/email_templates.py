from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.domain.models import NotificationType
from app.domain.severity import severity_label
from app.domain.state_machine import TaskStatus

APP_PUBLIC_URL = os.getenv("APP_PUBLIC_URL", "http://localhost:8000")
TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "web" / "templates" / "email"

STATUS_LABELS: dict[TaskStatus, str] = {
    TaskStatus.UNASSIGNED: "Unassigned",
    TaskStatus.OPEN: "Open",
    TaskStatus.IN_PROGRESS: "In progress",
    TaskStatus.COMPLETED: "Completed",
    TaskStatus.CLOSED: "Closed",
    TaskStatus.REJECTED: "Rejected",
}

ACCENT_COLORS: dict[NotificationType, str] = {
    NotificationType.TASK_CREATED: "#dc2626",
    NotificationType.TASK_ASSIGNED: "#1d4ed8",
    NotificationType.TASK_VIEWED: "#0891b2",
    NotificationType.TASK_COMPLETED: "#16a34a",
    NotificationType.TASK_REJECTED: "#dc2626",
    NotificationType.TASK_CLOSED: "#6b7280",
    NotificationType.TASK_OVERDUE: "#dc2626",
    NotificationType.TASK_REMINDER: "#f59e0b",
}

_TEMPLATE_BY_TYPE: dict[NotificationType, str] = {
    NotificationType.TASK_CREATED: "task_critical.html",
    NotificationType.TASK_OVERDUE: "task_overdue.html",
    NotificationType.TASK_REMINDER: "task_reminder.html",
}

_environment = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class TaskEmailContext:
    id: str
    serial_number: str
    description: str
    severity: int
    status: TaskStatus
    due_date: date | None
    created_at: datetime
    action_required: str | None = None
    floor: str | None = None
    location_name: str | None = None
    category_name: str | None = None
    inspector_name: str | None = None

    @property
    def url(self) -> str:
        return f"{APP_PUBLIC_URL.rstrip('/')}/tasks/{self.id}"

    @property
    def severity_label(self) -> str:
        return severity_label(self.severity)

    @property
    def status_label(self) -> str:
        return STATUS_LABELS.get(self.status, str(self.status))


def build_subject(event_type: NotificationType, title: str, task: TaskEmailContext) -> str:
    if event_type == NotificationType.TASK_CREATED:
        where = f"{task.location_name} " if task.location_name else ""
        return f"URGENT: STOP WORK IMMEDIATELY, {where}#{task.serial_number}"
    return f"{title}: #{task.serial_number}"


def render_email(
    event_type: NotificationType,
    *,
    recipient_name: str,
    title: str,
    message: str,
    task: TaskEmailContext,
    rejection_reason: str | None = None,
) -> str:
    template = _environment.get_template(_TEMPLATE_BY_TYPE.get(event_type, "task_event.html"))
    return template.render(
        heading=title,
        accent_color=ACCENT_COLORS.get(event_type, "#1d4ed8"),
        recipient_name=recipient_name,
        message=message,
        task=task,
        rejection_reason=rejection_reason,
    )
