from __future__ import annotations

from datetime import UTC, datetime, time, timedelta

import structlog
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from app.domain.models import Notification, NotificationType, SweepResultRead, Task, now_utc
from app.domain.severity import overdue_cutoff
from app.domain.state_machine import INACTIVE_STATES
from app.infra.db import get_engine
from app.services.notification_service import NotificationDispatcher

logger = structlog.get_logger(__name__)


class SweepService:
    def __init__(self, dispatcher: NotificationDispatcher | None = None) -> None:
        self._dispatcher = dispatcher or NotificationDispatcher()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _ensure_utc(dt: datetime) -> datetime:
        if dt.tzinfo is None:
            return dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    def _escalation_candidates(self) -> SelectOfScalar[Task]:
        return (
            select(Task)
            .where(col(Task.responsible_id).is_not(None))
            .where(col(Task.due_date).is_not(None))
            .where(col(Task.status).not_in(list(INACTIVE_STATES)))
        )

    def _already_notified_today(self, session: Session, task_id: str, now: datetime) -> bool:
        day_start = datetime.combine(now.date(), time.min, tzinfo=UTC)
        existing = session.exec(
            select(Notification.id)
            .where(Notification.task_id == task_id)
            .where(Notification.type == NotificationType.TASK_OVERDUE)
            .where(col(Notification.created_at) >= day_start)
            .where(col(Notification.created_at) < day_start + timedelta(days=1))
        ).first()
        return existing is not None

    def _run(self, name: str, event_type: NotificationType, task_ids: list[str]) -> SweepResultRead:
        sent = 0
        for task_id in task_ids:
            try:
                result = self._dispatcher.notify(task_id, event_type)
            except Exception:
                logger.exception("sweep_dispatch_failed", sweep=name, task_id=task_id)
                continue
            sent += result.notifications_written
        logger.info("sweep_finished", sweep=name, selected_count=len(task_ids), notifications_sent=sent)
        return SweepResultRead(selected_count=len(task_ids), notifications_sent=sent)

    def overdue_sweep(self, *, now: datetime | None = None) -> SweepResultRead:
        now = self._ensure_utc(now or now_utc())
        with self._session() as session:
            statement = self._escalation_candidates().where(col(Task.due_date) < overdue_cutoff(now))
            candidates = list(session.exec(statement).all())
            task_ids = [task.id for task in candidates]
            pending = [task_id for task_id in task_ids if not self._already_notified_today(session, task_id, now)]
        skipped = len(task_ids) - len(pending)
        if skipped:
            logger.info("overdue_sweep_rate_limited", skipped=skipped)
        result = self._run("overdue", NotificationType.TASK_OVERDUE, pending)
        return SweepResultRead(selected_count=len(task_ids), notifications_sent=result.notifications_sent)

    def reminder_sweep(self, *, now: datetime | None = None) -> SweepResultRead:
        now = self._ensure_utc(now or now_utc())
        tomorrow = now.date() + timedelta(days=1)
        with self._session() as session:
            statement = self._escalation_candidates().where(Task.due_date == tomorrow)
            task_ids = [task.id for task in session.exec(statement).all()]
        return self._run("reminder", NotificationType.TASK_REMINDER, task_ids)
