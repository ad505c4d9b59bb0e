from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta


@dataclass(frozen=True)
class SeverityLevel:
    level: int
    label: str
    interval: str
    due_days: int
    color: str


SEVERITY_LEVELS: dict[int, SeverityLevel] = {
    5: SeverityLevel(5, "STOP WORK IMMEDIATELY", "Same day", 0, "#ef4444"),
    4: SeverityLevel(4, "WITHIN 2 DAYS", "2 days", 2, "#f97316"),
    3: SeverityLevel(3, "WITHIN 1 WEEK", "1 week", 7, "#eab308"),
    2: SeverityLevel(2, "NEXT INSPECTION", "~30 days", 30, "#3b82f6"),
    1: SeverityLevel(1, "PLANNED INSPECTION", "Planned", 90, "#6b7280"),
}

CRITICAL_SEVERITY = 5


def due_days(severity: int) -> int:
    level = SEVERITY_LEVELS.get(severity)
    if level is None:
        raise ValueError(f"severity must be between 1 and 5, got {severity}")
    return level.due_days


def compute_due_date(severity: int, today: date) -> date:
    """Default remediation deadline for a newly logged task.

    Evaluated once at creation; later severity edits never move the date.
    """
    return today + timedelta(days=due_days(severity))


def severity_label(severity: int) -> str:
    level = SEVERITY_LEVELS.get(severity)
    if level is None:
        return str(severity)
    return f"{'★' * level.level} {level.label}"


def overdue_cutoff(now: datetime) -> date:
    """First due date that is not yet overdue at ``now``.

    A task is overdue once the start of its due date (00:00 UTC) lies in the
    past, so ``due_date < overdue_cutoff(now)`` selects overdue rows.
    """
    now = now.astimezone(UTC) if now.tzinfo is not None else now.replace(tzinfo=UTC)
    today = now.date()
    if now.time() == time.min:
        return today
    return today + timedelta(days=1)
