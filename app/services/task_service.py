from __future__ import annotations

import os
from datetime import date, datetime
from typing import Any

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.errors import (
    AuthorizationError,
    CascadeDeleteError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.domain.models import (
    CascadeDeleteRead,
    Location,
    Notification,
    NotificationType,
    PhotoType,
    Profile,
    Task,
    TaskAction,
    TaskCategory,
    TaskCommentCreate,
    TaskCreate,
    TaskPhoto,
    TaskPhotoInput,
    TaskStatsRead,
    TaskTransitionRequest,
    TaskUpdate,
    now_utc,
)
from app.domain.permissions import (
    Actor,
    can_create_task,
    can_delete_task,
    can_edit_task,
    ensure_active,
    may_act_on_task,
)
from app.domain.severity import CRITICAL_SEVERITY, compute_due_date, overdue_cutoff
from app.domain.state_machine import (
    INACTIVE_STATES,
    TERMINAL_STATES,
    TaskStatus,
    UserRole,
    allowed_roles,
    can_transition,
    initial_status,
)
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.notification_service import NotificationDispatcher

SERIAL_PREFIX = os.getenv("SERIAL_PREFIX", "ISG")
SERIAL_ALLOCATION_ATTEMPTS = 5

# Notification fired after a successful move into each status.
TRANSITION_NOTIFICATIONS: dict[TaskStatus, NotificationType] = {
    TaskStatus.OPEN: NotificationType.TASK_ASSIGNED,
    TaskStatus.COMPLETED: NotificationType.TASK_COMPLETED,
    TaskStatus.REJECTED: NotificationType.TASK_REJECTED,
    TaskStatus.CLOSED: NotificationType.TASK_CLOSED,
}

_REQUIRED_FIELDS = {"description", "severity", "detection_method"}
_PARTICIPANT_ROLES = (UserRole.ADMIN, UserRole.INSPECTOR, UserRole.RESPONSIBLE)
# Delete order for a task's dependents; the task row itself goes last.
_CASCADE_CHILDREN: tuple[tuple[str, type[TaskPhoto] | type[TaskAction] | type[Notification]], ...] = (
    ("task_photos", TaskPhoto),
    ("task_actions", TaskAction),
    ("notifications", Notification),
)

logger = structlog.get_logger(__name__)


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class TaskService:
    def __init__(self, dispatcher: NotificationDispatcher | None = None) -> None:
        self._dispatcher = dispatcher or NotificationDispatcher()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_task(self, session: Session, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("task not found")
        return task

    def _check_visible(self, actor: Actor, task: Task) -> None:
        if actor.role == UserRole.RESPONSIBLE and not actor.is_admin and task.responsible_id != actor.id:
            raise AuthorizationError("task is not assigned to you")

    def _check_version(self, task: Task, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != task.version:
            raise ConflictError(
                f"task version mismatch: expected {expected_version}, current {task.version}"
            )

    def _validate_references(
        self,
        session: Session,
        *,
        location_id: str | None,
        category_id: str | None,
    ) -> None:
        if location_id is not None and session.get(Location, location_id) is None:
            raise NotFoundError("location not found")
        if category_id is not None and session.get(TaskCategory, category_id) is None:
            raise NotFoundError("category not found")

    def _validate_responsible(self, session: Session, responsible_id: str) -> Profile:
        profile = session.get(Profile, responsible_id)
        if profile is None:
            raise NotFoundError("responsible profile not found")
        if not profile.is_active:
            raise ValidationError("responsible profile is inactive")
        return profile

    def _append_action(
        self,
        session: Session,
        task_id: str,
        user_id: str,
        comment: str,
        *,
        is_system: bool = True,
    ) -> TaskAction:
        action = TaskAction(task_id=task_id, user_id=user_id, comment=comment[:2000], is_system=is_system)
        session.add(action)
        return action

    def _add_photos(
        self,
        session: Session,
        task_id: str,
        uploaded_by: str,
        photos: list[TaskPhotoInput],
        photo_type: PhotoType,
    ) -> None:
        for photo in photos:
            session.add(
                TaskPhoto(
                    task_id=task_id,
                    photo_url=photo.photo_url,
                    storage_path=photo.storage_path,
                    photo_type=photo_type,
                    caption=photo.caption,
                    uploaded_by=uploaded_by,
                    file_size=photo.file_size,
                )
            )

    def _next_serial_number(self, session: Session, year: int) -> str:
        prefix = f"{SERIAL_PREFIX}-{year}-"
        # Longest suffix first so 100000 ranks above 99999.
        latest = session.execute(
            sa.select(Task.serial_number)
            .where(col(Task.serial_number).like(f"{prefix}%"))
            .order_by(sa.func.length(Task.serial_number).desc(), col(Task.serial_number).desc())
            .limit(1)
        ).scalar_one_or_none()
        sequence = 0
        if latest:
            try:
                sequence = int(str(latest).rsplit("-", 1)[-1])
            except ValueError:
                sequence = 0
        return f"{prefix}{sequence + 1:05d}"

    def _apply_versioned(self, session: Session, task: Task, values: dict[str, Any]) -> None:
        result = session.execute(
            sa.update(Task)
            .where(col(Task.id) == task.id)
            .where(col(Task.version) == task.version)
            .values(**values, version=task.version + 1, updated_at=now_utc())
        )
        if int(getattr(result, "rowcount", 0) or 0) != 1:
            session.rollback()
            raise ConflictError("task was modified concurrently")

    def _dispatch(
        self,
        task_id: str,
        event_type: NotificationType,
        actor_name: str | None = None,
        rejection_reason: str | None = None,
    ) -> None:
        try:
            self._dispatcher.notify(task_id, event_type, actor_name=actor_name, rejection_reason=rejection_reason)
        except Exception:
            # The mutation is already committed; delivery problems are only logged.
            logger.exception("notification_dispatch_failed", task_id=task_id, event_type=event_type.value)

    def create_task(self, actor: Actor, payload: TaskCreate, *, today: date | None = None) -> Task:
        ensure_active(actor)
        if not can_create_task(actor):
            raise AuthorizationError("only admins and inspectors can create tasks")

        today = today or now_utc().date()
        due_date = payload.due_date or compute_due_date(payload.severity, today)
        status = initial_status(payload.responsible_id)

        task: Task | None = None
        for attempt in range(1, SERIAL_ALLOCATION_ATTEMPTS + 1):
            with self._session() as session:
                self._validate_references(
                    session,
                    location_id=payload.location_id,
                    category_id=payload.category_id,
                )
                if payload.responsible_id is not None:
                    self._validate_responsible(session, payload.responsible_id)

                candidate = Task(
                    serial_number=self._next_serial_number(session, today.year),
                    inspector_id=actor.id,
                    responsible_id=payload.responsible_id,
                    location_id=payload.location_id,
                    category_id=payload.category_id,
                    floor=payload.floor,
                    exact_location=payload.exact_location,
                    work_type=payload.work_type,
                    detection_method=payload.detection_method,
                    description=payload.description,
                    severity=payload.severity,
                    action_required=payload.action_required,
                    status=status,
                    due_date=due_date,
                )
                session.add(candidate)
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    logger.warning("serial_number_collision", serial_number=candidate.serial_number, attempt=attempt)
                    continue
                self._add_photos(session, candidate.id, actor.id, payload.photos, PhotoType.BEFORE)
                self._append_action(session, candidate.id, actor.id, f"Task created with status {status.value}")
                session.commit()
                session.refresh(candidate)
                task = candidate
                break
        if task is None:
            raise ConflictError("could not allocate a serial number")

        logger.info(
            "task_created",
            task_id=task.id,
            serial_number=task.serial_number,
            severity=task.severity,
            status=task.status.value,
        )
        event_bus.publish_dict(
            "task.created",
            {
                "task_id": task.id,
                "serial_number": task.serial_number,
                "severity": task.severity,
                "status": task.status.value,
                "due_date": task.due_date.isoformat() if task.due_date else None,
            },
            actor_id=actor.id,
        )
        if task.responsible_id is not None:
            self._dispatch(task.id, NotificationType.TASK_ASSIGNED, actor.full_name)
        if task.severity == CRITICAL_SEVERITY:
            self._dispatch(task.id, NotificationType.TASK_CREATED, actor.full_name)
        return task

    def get_task(self, actor: Actor, task_id: str) -> tuple[Task, list[TaskPhoto], list[TaskAction]]:
        ensure_active(actor)
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._check_visible(actor, task)
            photos = list(
                session.exec(
                    select(TaskPhoto)
                    .where(TaskPhoto.task_id == task_id)
                    .order_by(col(TaskPhoto.created_at).asc())
                ).all()
            )
            actions = list(
                session.exec(
                    select(TaskAction)
                    .where(TaskAction.task_id == task_id)
                    .order_by(col(TaskAction.created_at).asc())
                ).all()
            )
            return task, photos, actions

    def list_tasks(
        self,
        actor: Actor,
        *,
        status: TaskStatus | None = None,
        responsible_id: str | None = None,
        inspector_id: str | None = None,
        location_id: str | None = None,
        category_id: str | None = None,
        severity: int | None = None,
        overdue: bool | None = None,
        now: datetime | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> list[Task]:
        ensure_active(actor)
        if actor.role == UserRole.RESPONSIBLE and not actor.is_admin:
            responsible_id = actor.id
        with self._session() as session:
            statement = select(Task)
            if status is not None:
                statement = statement.where(Task.status == status)
            if responsible_id is not None:
                statement = statement.where(Task.responsible_id == responsible_id)
            if inspector_id is not None:
                statement = statement.where(Task.inspector_id == inspector_id)
            if location_id is not None:
                statement = statement.where(Task.location_id == location_id)
            if category_id is not None:
                statement = statement.where(Task.category_id == category_id)
            if severity is not None:
                statement = statement.where(Task.severity == severity)
            if overdue is not None:
                cutoff = overdue_cutoff(now or now_utc())
                overdue_clause = sa.and_(
                    col(Task.due_date).is_not(None),
                    col(Task.due_date) < cutoff,
                    col(Task.status).not_in(list(INACTIVE_STATES)),
                )
                statement = statement.where(overdue_clause if overdue else sa.not_(overdue_clause))
            statement = statement.order_by(col(Task.created_at).desc()).offset(offset).limit(limit)
            return list(session.exec(statement).all())

    def stats(self, actor: Actor, *, now: datetime | None = None) -> TaskStatsRead:
        ensure_active(actor)
        with self._session() as session:
            scope = sa.true()
            if actor.role == UserRole.RESPONSIBLE and not actor.is_admin:
                scope = col(Task.responsible_id) == actor.id
            rows = session.execute(
                sa.select(Task.status, sa.func.count()).where(scope).group_by(Task.status)
            ).all()
            by_status = {item.value: 0 for item in TaskStatus}
            for status_value, count in rows:
                key = status_value.value if isinstance(status_value, TaskStatus) else str(status_value)
                by_status[key] = int(count)
            cutoff = overdue_cutoff(now or now_utc())
            overdue = session.execute(
                sa.select(sa.func.count())
                .select_from(Task)
                .where(scope)
                .where(col(Task.due_date).is_not(None))
                .where(col(Task.due_date) < cutoff)
                .where(col(Task.status).not_in(list(INACTIVE_STATES)))
            ).scalar_one()
        total = sum(by_status.values())
        closure_rate = round(by_status[TaskStatus.CLOSED.value] / total, 4) if total else 0.0
        return TaskStatsRead(total=total, overdue=int(overdue), by_status=by_status, closure_rate=closure_rate)

    def update_task(self, actor: Actor, task_id: str, payload: TaskUpdate) -> Task:
        changes = payload.model_dump(exclude_unset=True, exclude={"expected_version"})
        assigned_to: str | None = None
        with self._session() as session:
            task = self._get_task(session, task_id)
            ensure_active(actor)
            self._check_version(task, payload.expected_version)
            if not can_edit_task(actor, task):
                raise AuthorizationError("only an admin or the owning inspector can edit this task")
            if task.status in TERMINAL_STATES:
                raise ConflictError(f"{task.status.value} task cannot be edited")

            for field in _REQUIRED_FIELDS & changes.keys():
                if changes[field] is None:
                    raise ValidationError(f"{field} cannot be cleared")
            if "due_date" in changes and task.status in {TaskStatus.COMPLETED, TaskStatus.CLOSED}:
                raise ValidationError("due_date cannot change after completion")
            self._validate_references(
                session,
                location_id=changes.get("location_id"),
                category_id=changes.get("category_id"),
            )

            actions: list[str] = []
            if "responsible_id" in changes:
                new_responsible = changes["responsible_id"]
                if new_responsible is None:
                    if task.responsible_id is not None:
                        raise ValidationError("responsible cannot be cleared once assigned")
                    changes.pop("responsible_id")
                elif new_responsible != task.responsible_id:
                    profile = self._validate_responsible(session, new_responsible)
                    assigned_to = new_responsible
                    actions.append(f"Assigned to {profile.full_name}")
                    if task.status == TaskStatus.UNASSIGNED:
                        changes["status"] = TaskStatus.OPEN
                        actions.append("Status changed from unassigned to open")
                else:
                    changes.pop("responsible_id")

            if not changes:
                return task

            self._apply_versioned(session, task, changes)
            for comment in actions:
                self._append_action(session, task.id, actor.id, comment)
            session.commit()
            session.refresh(task)

        logger.info("task_updated", task_id=task.id, fields=sorted(changes), version=task.version)
        event_bus.publish_dict(
            "task.updated",
            {"task_id": task.id, "fields": sorted(changes), "version": task.version},
            actor_id=actor.id,
        )
        if assigned_to is not None:
            self._dispatch(task.id, NotificationType.TASK_ASSIGNED, actor.full_name)
        return task

    def transition(self, actor: Actor, task_id: str, request: TaskTransitionRequest) -> Task:
        target = request.status
        with self._session() as session:
            task = self._get_task(session, task_id)
            ensure_active(actor)
            self._check_version(task, request.expected_version)
            source = task.status

            reassigning = (
                target == TaskStatus.OPEN
                and request.responsible_id is not None
                and request.responsible_id != task.responsible_id
            )
            if target == source and not reassigning:
                if not may_act_on_task(actor, task, _PARTICIPANT_ROLES):
                    raise AuthorizationError("not a participant of this task")
                return task
            if not can_transition(source, target):
                raise InvalidTransitionError(f"illegal transition: {source.value} -> {target.value}")
            if not may_act_on_task(actor, task, allowed_roles(source, target)):
                raise AuthorizationError(f"not allowed to move task from {source.value} to {target.value}")

            values, comment = self._transition_values(session, task, source, request)
            self._apply_versioned(session, task, values)
            if target == TaskStatus.COMPLETED:
                self._add_photos(session, task.id, actor.id, request.photos, PhotoType.AFTER)
            self._append_action(session, task.id, actor.id, comment)
            session.commit()
            session.refresh(task)

        logger.info(
            "task_transitioned",
            task_id=task.id,
            from_status=source.value,
            to_status=target.value,
            actor_id=actor.id,
            version=task.version,
        )
        event_bus.publish_dict(
            "task.transitioned",
            {
                "task_id": task.id,
                "from_status": source.value,
                "to_status": target.value,
                "responsible_id": task.responsible_id,
                "version": task.version,
            },
            actor_id=actor.id,
        )
        event_type = TRANSITION_NOTIFICATIONS.get(target)
        if event_type is not None:
            self._dispatch(task.id, event_type, actor.full_name, task.rejection_reason)
        return task

    def _transition_values(
        self,
        session: Session,
        task: Task,
        source: TaskStatus,
        request: TaskTransitionRequest,
    ) -> tuple[dict[str, Any], str]:
        target = request.status
        now = now_utc()
        values: dict[str, Any] = {"status": target}
        comment = f"Status changed from {source.value} to {target.value}"

        if target == TaskStatus.OPEN:
            if request.responsible_id is None:
                raise ValidationError("responsible_id is required to assign a task")
            profile = self._validate_responsible(session, request.responsible_id)
            values["responsible_id"] = request.responsible_id
            if source == TaskStatus.OPEN:
                comment = f"Reassigned to {profile.full_name}"
            else:
                comment = f"{comment}, assigned to {profile.full_name}"
        elif target == TaskStatus.IN_PROGRESS:
            if task.responsible_id is None:
                raise ValidationError("task has no responsible to resume work")
            if source == TaskStatus.REJECTED:
                values.update(rejection_reason=None, completed_at=None, closed_at=None)
        elif target == TaskStatus.COMPLETED:
            if _blank(request.note):
                raise ValidationError("a completion note is required")
            if not request.photos:
                raise ValidationError("at least one after-photo is required")
            values.update(completed_at=now, rejection_reason=None, closed_at=None)
        elif target == TaskStatus.CLOSED:
            values["closed_at"] = now
        elif target == TaskStatus.REJECTED:
            if _blank(request.rejection_reason):
                raise ValidationError("rejection_reason is required")
            values["rejection_reason"] = (request.rejection_reason or "").strip()
            comment = f"{comment}: {values['rejection_reason']}"

        if not _blank(request.note) and target != TaskStatus.REJECTED:
            comment = f"{comment}: {(request.note or '').strip()}"
        return values, comment

    def add_comment(self, actor: Actor, task_id: str, payload: TaskCommentCreate) -> TaskAction:
        with self._session() as session:
            task = self._get_task(session, task_id)
            ensure_active(actor)
            if not may_act_on_task(actor, task, _PARTICIPANT_ROLES):
                raise AuthorizationError("only task participants can comment")
            action = self._append_action(session, task.id, actor.id, payload.comment, is_system=False)
            session.commit()
            session.refresh(action)

        event_bus.publish_dict(
            "task.commented",
            {"task_id": task_id, "action_id": action.id},
            actor_id=actor.id,
        )
        return action

    def mark_viewed(self, actor: Actor, task_id: str) -> Task:
        with self._session() as session:
            task = self._get_task(session, task_id)
            ensure_active(actor)
            self._check_visible(actor, task)
            if task.responsible_id != actor.id or task.viewed_at is not None:
                return task
            result = session.execute(
                sa.update(Task)
                .where(col(Task.id) == task.id)
                .where(col(Task.viewed_at).is_(None))
                .values(viewed_at=now_utc())
            )
            session.commit()
            if int(getattr(result, "rowcount", 0) or 0) != 1:
                session.refresh(task)
                return task
            session.refresh(task)

        event_bus.publish_dict("task.viewed", {"task_id": task.id}, actor_id=actor.id)
        self._dispatch(task.id, NotificationType.TASK_VIEWED, actor.full_name)
        return task

    def _remaining_children(self, session: Session, task_id: str) -> dict[str, int]:
        leftovers: dict[str, int] = {}
        for name, model in _CASCADE_CHILDREN:
            count = session.execute(
                sa.select(sa.func.count()).select_from(model).where(col(model.task_id) == task_id)
            ).scalar_one()
            if count:
                leftovers[name] = int(count)
        if session.get(Task, task_id) is not None:
            leftovers["tasks"] = 1
        return leftovers

    def delete_task(self, actor: Actor, task_id: str) -> CascadeDeleteRead:
        deleted_counts: dict[str, int] = {}
        with self._session() as session:
            task = self._get_task(session, task_id)
            ensure_active(actor)
            if not can_delete_task(actor, task):
                raise AuthorizationError("only a super admin or the task's admin inspector can delete it")
            serial_number = task.serial_number

            step = "task_photos"
            try:
                for step, model in _CASCADE_CHILDREN:
                    result = session.execute(sa.delete(model).where(col(model.task_id) == task_id))
                    deleted_counts[step] = int(getattr(result, "rowcount", 0) or 0)
                step = "tasks"
                result = session.execute(sa.delete(Task).where(col(Task.id) == task_id))
                deleted_counts[step] = int(getattr(result, "rowcount", 0) or 0)
                session.expunge_all()

                step = "verify"
                leftovers = self._remaining_children(session, task_id)
                if leftovers:
                    raise CascadeDeleteError(
                        f"cascade delete left rows behind: {leftovers}",
                        step=step,
                        deleted_counts=deleted_counts,
                    )
                session.commit()
            except CascadeDeleteError:
                session.rollback()
                logger.error("task_delete_failed", task_id=task_id, step=step, deleted_counts=deleted_counts)
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("task_delete_failed", task_id=task_id, step=step, deleted_counts=deleted_counts)
                raise CascadeDeleteError(
                    f"cascade delete failed at step {step}",
                    step=step,
                    deleted_counts=deleted_counts,
                ) from exc

        logger.info("task_deleted", task_id=task_id, serial_number=serial_number, deleted_counts=deleted_counts)
        event_bus.publish_dict(
            "task.deleted",
            {"task_id": task_id, "serial_number": serial_number, "deleted_counts": deleted_counts},
            actor_id=actor.id,
        )
        return CascadeDeleteRead(task_id=task_id, deleted_counts=deleted_counts)
