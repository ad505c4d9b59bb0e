from __future__ import annotations

import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.errors import AuthorizationError, NotFoundError
from app.domain.models import (
    DispatchResult,
    EmailLog,
    EmailStatus,
    Location,
    Notification,
    NotificationType,
    NotifyRequest,
    Profile,
    RecipientDispatch,
    Task,
    TaskCategory,
    now_utc,
)
from app.domain.permissions import Actor, ensure_active
from app.domain.severity import severity_label
from app.domain.state_machine import UserRole
from app.infra.db import get_engine
from app.infra.mailer import EmailGateway, get_email_gateway
from app.services.email_templates import TaskEmailContext, build_subject, render_email

logger = structlog.get_logger(__name__)

# Wall-clock budget for all emails of one dispatch; later recipients get the in-app row only.
EMAIL_DISPATCH_DEADLINE_SECONDS = float(os.getenv("EMAIL_DISPATCH_DEADLINE_SECONDS", "30"))


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str | None
    full_name: str
    title: str
    message: str


def _excerpt(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _recipient(profile: Profile, title: str, message: str) -> Recipient:
    return Recipient(
        user_id=profile.id,
        email=profile.email or None,
        full_name=profile.full_name,
        title=title,
        message=message,
    )


def resolve_recipients(
    event_type: NotificationType,
    task: Task,
    *,
    inspector: Profile | None,
    responsible: Profile | None,
    admins: Sequence[Profile] = (),
    actor_name: str | None = None,
    rejection_reason: str | None = None,
) -> list[Recipient]:
    serial = task.serial_number
    if event_type == NotificationType.TASK_ASSIGNED:
        if responsible is None:
            return []
        message = (
            f'"{_excerpt(task.description)}" has been assigned to you. '
            f"Severity: {severity_label(task.severity)}"
        )
        return [_recipient(responsible, "New task assigned", message)]

    if event_type == NotificationType.TASK_COMPLETED:
        if inspector is None:
            return []
        who = actor_name or "The responsible party"
        message = f"{who} completed task #{serial}. Please verify on site and close it."
        return [_recipient(inspector, "Task completed", message)]

    if event_type == NotificationType.TASK_REJECTED:
        if responsible is None:
            return []
        message = f"Task #{serial} was rejected."
        if rejection_reason:
            message = f"{message} Reason: {rejection_reason}"
        return [_recipient(responsible, "Task rejected", message)]

    if event_type == NotificationType.TASK_CLOSED:
        message = f"Task #{serial} was closed successfully."
        recipients = [_recipient(responsible, "Task closed", message)] if responsible is not None else []
        if inspector is not None and all(item.user_id != inspector.id for item in recipients):
            recipients.append(_recipient(inspector, "Task closed", message))
        return recipients

    if event_type == NotificationType.TASK_VIEWED:
        if inspector is None:
            return []
        who = actor_name or "The responsible party"
        return [_recipient(inspector, "Task viewed", f"{who} viewed task #{serial}.")]

    if event_type == NotificationType.TASK_OVERDUE:
        if responsible is None:
            return []
        message = f"Task #{serial} passed its due date ({task.due_date}). Please resolve it as soon as possible."
        return [_recipient(responsible, "Task overdue", message)]

    if event_type == NotificationType.TASK_REMINDER:
        if responsible is None:
            return []
        message = f"Task #{serial} is due tomorrow ({task.due_date})."
        return [_recipient(responsible, "Task due tomorrow", message)]

    if event_type == NotificationType.TASK_CREATED:
        message = f"Critical hazard #{serial} reported. Work must stop immediately."
        return [_recipient(admin, "STOP WORK IMMEDIATELY", message) for admin in admins]

    return []


class NotificationDispatcher:
    def __init__(
        self,
        gateway: EmailGateway | None = None,
        *,
        deadline_seconds: float = EMAIL_DISPATCH_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway or get_email_gateway()
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _email_context(self, session: Session, task: Task, inspector: Profile | None) -> TaskEmailContext:
        location = session.get(Location, task.location_id) if task.location_id else None
        category = session.get(TaskCategory, task.category_id) if task.category_id else None
        return TaskEmailContext(
            id=task.id,
            serial_number=task.serial_number,
            description=task.description,
            severity=task.severity,
            status=task.status,
            due_date=task.due_date,
            created_at=task.created_at,
            action_required=task.action_required,
            floor=task.floor,
            location_name=location.name if location is not None else None,
            category_name=category.name if category is not None else None,
            inspector_name=inspector.full_name if inspector is not None else None,
        )

    def _active_admins(self, session: Session) -> list[Profile]:
        return list(
            session.exec(
                select(Profile)
                .where(Profile.role == UserRole.ADMIN)
                .where(col(Profile.is_active).is_(True))
                .order_by(col(Profile.created_at).asc())
            ).all()
        )

    def notify(
        self,
        task_id: str,
        event_type: NotificationType,
        actor_name: str | None = None,
        rejection_reason: str | None = None,
    ) -> DispatchResult:
        with self._session() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise NotFoundError("task not found")
            inspector = session.get(Profile, task.inspector_id)
            responsible = session.get(Profile, task.responsible_id) if task.responsible_id else None
            admins = self._active_admins(session) if event_type == NotificationType.TASK_CREATED else []
            reason = rejection_reason or task.rejection_reason
            recipients = resolve_recipients(
                event_type,
                task,
                inspector=inspector,
                responsible=responsible,
                admins=admins,
                actor_name=actor_name,
                rejection_reason=reason,
            )
            email_context = self._email_context(session, task, inspector)

        result = DispatchResult(task_id=task_id, event_type=event_type)
        deadline = self._clock() + self._deadline_seconds
        for recipient in recipients:
            result.recipients.append(
                self._deliver(task_id, event_type, recipient, email_context, reason, deadline=deadline)
            )
        logger.info(
            "notification_dispatched",
            task_id=task_id,
            event_type=event_type.value,
            recipients=len(result.recipients),
            notifications_written=result.notifications_written,
            emails_sent=sum(1 for item in result.recipients if item.email_sent),
        )
        return result

    def notify_for_actor(self, actor: Actor, payload: NotifyRequest) -> DispatchResult:
        ensure_active(actor)
        with self._session() as session:
            task = session.get(Task, payload.task_id)
            if task is None:
                raise NotFoundError("task not found")
            involved = actor.id in {task.inspector_id, task.responsible_id}
        if not (actor.is_admin or involved):
            raise AuthorizationError("not allowed to notify about this task")
        return self.notify(
            payload.task_id,
            payload.type,
            actor_name=actor.full_name or None,
            rejection_reason=payload.rejection_reason,
        )

    def _deliver(
        self,
        task_id: str,
        event_type: NotificationType,
        recipient: Recipient,
        email_context: TaskEmailContext,
        rejection_reason: str | None,
        *,
        deadline: float | None = None,
    ) -> RecipientDispatch:
        outcome = RecipientDispatch(user_id=recipient.user_id, email=recipient.email)
        try:
            with self._session() as session:
                row = Notification(
                    user_id=recipient.user_id,
                    task_id=task_id,
                    type=event_type,
                    title=recipient.title,
                    message=recipient.message,
                )
                session.add(row)
                session.commit()
                outcome.notification_id = row.id
        except SQLAlchemyError as exc:
            logger.exception("notification_write_failed", task_id=task_id, user_id=recipient.user_id)
            outcome.error = f"notification write failed: {exc}"
            return outcome

        if not recipient.email:
            return outcome

        subject = build_subject(event_type, recipient.title, email_context)
        if deadline is not None and self._clock() >= deadline:
            logger.warning("email_dispatch_deadline_exceeded", task_id=task_id, to=recipient.email)
            outcome.error = "email dispatch deadline exceeded"
            self._log_email(
                task_id=task_id,
                recipient=recipient,
                event_type=event_type,
                subject=subject,
                success=False,
                error=outcome.error,
                message_id=None,
            )
            return outcome
        try:
            html = render_email(
                event_type,
                recipient_name=recipient.full_name,
                title=recipient.title,
                message=recipient.message,
                task=email_context,
                rejection_reason=rejection_reason if event_type == NotificationType.TASK_REJECTED else None,
            )
            send_result = self._gateway.send_email(to=recipient.email, subject=subject, html=html)
            outcome.email_sent = send_result.success
            outcome.error = send_result.error
            message_id = send_result.message_id
        except Exception as exc:
            logger.exception("email_dispatch_failed", task_id=task_id, to=recipient.email)
            outcome.email_sent = False
            outcome.error = str(exc)
            message_id = None

        self._log_email(
            task_id=task_id,
            recipient=recipient,
            event_type=event_type,
            subject=subject,
            success=outcome.email_sent,
            error=outcome.error,
            message_id=message_id,
        )
        return outcome

    def _log_email(
        self,
        *,
        task_id: str,
        recipient: Recipient,
        event_type: NotificationType,
        subject: str,
        success: bool,
        error: str | None,
        message_id: str | None,
    ) -> None:
        try:
            with self._session() as session:
                session.add(
                    EmailLog(
                        task_id=task_id,
                        to_email=recipient.email or "",
                        to_name=recipient.full_name,
                        email_type=event_type,
                        subject=subject,
                        status=EmailStatus.SENT if success else EmailStatus.FAILED,
                        error_msg=error,
                        message_id=message_id,
                    )
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("email_log_write_failed", task_id=task_id, to=recipient.email)

    def list_notifications(self, user_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        with self._session() as session:
            statement = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                statement = statement.where(col(Notification.is_read).is_(False))
            statement = statement.order_by(col(Notification.created_at).desc()).limit(limit)
            return list(session.exec(statement).all())

    def unread_count(self, user_id: str) -> int:
        with self._session() as session:
            statement = (
                sa.select(sa.func.count())
                .select_from(Notification)
                .where(col(Notification.user_id) == user_id)
                .where(col(Notification.is_read).is_(False))
            )
            return int(session.execute(statement).scalar_one())

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        with self._session() as session:
            row = session.exec(
                select(Notification)
                .where(Notification.id == notification_id)
                .where(Notification.user_id == user_id)
            ).first()
            if row is None:
                raise NotFoundError("notification not found")
            if not row.is_read:
                row.is_read = True
                row.read_at = now_utc()
                session.add(row)
                session.commit()
                session.refresh(row)
            return row

    def mark_all_read(self, user_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                sa.update(Notification)
                .where(col(Notification.user_id) == user_id)
                .where(col(Notification.is_read).is_(False))
                .values(is_read=True, read_at=now_utc())
            )
            session.commit()
            return int(result.rowcount or 0)
