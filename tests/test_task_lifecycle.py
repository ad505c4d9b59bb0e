from __future__ import annotations

from collections.abc import Generator
from datetime import date
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    ValidationError,
)
from app.domain.models import (
    EmailLog,
    EmailStatus,
    EventRecord,
    Notification,
    NotificationType,
    PhotoType,
    Profile,
    Task,
    TaskAction,
    TaskCreate,
    TaskPhoto,
    TaskPhotoInput,
    TaskTransitionRequest,
    TaskUpdate,
)
from app.domain.permissions import Actor
from app.domain.state_machine import TaskStatus, UserRole
from app.infra import audit, db, events
from app.infra.mailer import EmailSendResult
from app.services.notification_service import NotificationDispatcher
from app.services.task_service import TaskService

TODAY = date(2026, 3, 10)


class RecordingGateway:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send_email(self, *, to: str | list[str], subject: str, html: str) -> EmailSendResult:
        self.sent.append({"to": to, "subject": subject, "html": html})
        return EmailSendResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


class ExplodingDispatcher(NotificationDispatcher):
    def notify(self, *args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("dispatcher offline")


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lifecycle_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(audit, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture()
def service(test_engine: Engine, gateway: RecordingGateway) -> TaskService:
    return TaskService(dispatcher=NotificationDispatcher(gateway))


def _add_profile(
    engine: Engine,
    profile_id: str,
    role: UserRole,
    *,
    is_active: bool = True,
    is_super_admin: bool = False,
) -> Actor:
    with Session(engine) as session:
        session.add(
            Profile(
                id=profile_id,
                full_name=profile_id.replace("-", " ").title(),
                email=f"{profile_id}@example.com",
                role=role,
                is_active=is_active,
                is_super_admin=is_super_admin,
            )
        )
        session.commit()
    return Actor(
        id=profile_id,
        role=role,
        full_name=profile_id.replace("-", " ").title(),
        is_active=is_active,
        is_super_admin=is_super_admin,
    )


@pytest.fixture()
def people(test_engine: Engine) -> dict[str, Actor]:
    return {
        "admin": _add_profile(test_engine, "admin-1", UserRole.ADMIN),
        "inspector": _add_profile(test_engine, "inspector-1", UserRole.INSPECTOR),
        "other_inspector": _add_profile(test_engine, "inspector-2", UserRole.INSPECTOR),
        "responsible": _add_profile(test_engine, "responsible-1", UserRole.RESPONSIBLE),
        "other_responsible": _add_profile(test_engine, "responsible-2", UserRole.RESPONSIBLE),
    }


def _photo(name: str) -> TaskPhotoInput:
    return TaskPhotoInput(photo_url=f"https://cdn.example.com/{name}.jpg", storage_path=f"tasks/{name}.jpg")


def _create(
    service: TaskService,
    actor: Actor,
    *,
    severity: int = 3,
    responsible_id: str | None = None,
    **extra: Any,
) -> Any:
    payload = TaskCreate(
        description="Unguarded floor opening near stairwell B",
        severity=severity,
        responsible_id=responsible_id,
        photos=[_photo("before-1")],
        **extra,
    )
    return service.create_task(actor, payload, today=TODAY)


def _notifications(engine: Engine) -> list[Notification]:
    with Session(engine) as session:
        return list(session.exec(select(Notification)).all())


def _complete(service: TaskService, actor: Actor, task_id: str, **extra: Any) -> Any:
    request = TaskTransitionRequest(
        status=TaskStatus.COMPLETED,
        note="Guard rail installed and inspected",
        photos=[_photo("after-1")],
        **extra,
    )
    return service.transition(actor, task_id, request)


def test_create_without_responsible_is_unassigned(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
    gateway: RecordingGateway,
) -> None:
    first = _create(service, people["inspector"])
    second = _create(service, people["inspector"], severity=1)

    assert first.status == TaskStatus.UNASSIGNED
    assert first.due_date == date(2026, 3, 17)
    assert first.serial_number == "ISG-2026-00001"
    assert second.serial_number == "ISG-2026-00002"
    assert second.due_date == date(2026, 6, 8)
    assert first.version == 1
    assert gateway.sent == []

    with Session(test_engine) as session:
        photos = session.exec(select(TaskPhoto).where(TaskPhoto.task_id == first.id)).all()
        actions = session.exec(select(TaskAction).where(TaskAction.task_id == first.id)).all()
        recorded = session.exec(select(EventRecord).where(EventRecord.event_type == "task.created")).all()
    assert [photo.photo_type for photo in photos] == [PhotoType.BEFORE]
    assert len(actions) == 1 and actions[0].is_system
    assert len(recorded) == 2


def test_explicit_due_date_overrides_severity_default(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], severity=4, due_date=date(2026, 4, 1))
    assert task.due_date == date(2026, 4, 1)


def test_create_with_responsible_opens_and_notifies(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
    gateway: RecordingGateway,
) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")

    assert task.status == TaskStatus.OPEN
    rows = _notifications(test_engine)
    assert [(row.user_id, row.type) for row in rows] == [("responsible-1", NotificationType.TASK_ASSIGNED)]
    assert [mail["to"] for mail in gateway.sent] == ["responsible-1@example.com"]
    with Session(test_engine) as session:
        logs = session.exec(select(EmailLog)).all()
    assert len(logs) == 1
    assert logs[0].status == EmailStatus.SENT
    assert logs[0].task_id == task.id


def test_serial_sequence_continues_past_five_digits(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    seeded = _create(service, people["inspector"])
    with Session(test_engine) as session:
        row = session.get(Task, seeded.id)
        assert row is not None
        row.serial_number = "ISG-2026-99999"
        session.add(row)
        session.commit()

    first = _create(service, people["inspector"])
    second = _create(service, people["inspector"])

    assert first.serial_number == "ISG-2026-100000"
    assert second.serial_number == "ISG-2026-100001"


def test_responsible_cannot_create(service: TaskService, people: dict[str, Actor]) -> None:
    with pytest.raises(AuthorizationError):
        _create(service, people["responsible"])


def test_inactive_responsible_cannot_be_assigned(service: TaskService, people: dict[str, Actor], test_engine: Engine) -> None:
    _add_profile(test_engine, "responsible-gone", UserRole.RESPONSIBLE, is_active=False)
    with pytest.raises(ValidationError):
        _create(service, people["inspector"], responsible_id="responsible-gone")


def test_severity_five_alerts_active_admins(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
    gateway: RecordingGateway,
) -> None:
    _add_profile(test_engine, "admin-2", UserRole.ADMIN)
    _add_profile(test_engine, "admin-retired", UserRole.ADMIN, is_active=False)

    task = _create(service, people["inspector"], severity=5, responsible_id="responsible-1")

    assert task.status == TaskStatus.OPEN
    assert task.due_date == TODAY
    rows = _notifications(test_engine)
    assigned = [row.user_id for row in rows if row.type == NotificationType.TASK_ASSIGNED]
    critical = sorted(row.user_id for row in rows if row.type == NotificationType.TASK_CREATED)
    assert assigned == ["responsible-1"]
    assert critical == ["admin-1", "admin-2"]
    urgent = [mail for mail in gateway.sent if mail["subject"].startswith("URGENT")]
    assert sorted(mail["to"] for mail in urgent) == ["admin-1@example.com", "admin-2@example.com"]


def test_full_lifecycle_sets_timestamps_and_notifies(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")

    started = service.transition(
        people["responsible"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.IN_PROGRESS),
    )
    assert started.status == TaskStatus.IN_PROGRESS
    assert started.version == 2
    assert started.completed_at is None

    completed = _complete(service, people["responsible"], task.id)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.closed_at is None

    closed = service.transition(people["admin"], task.id, TaskTransitionRequest(status=TaskStatus.CLOSED))
    assert closed.status == TaskStatus.CLOSED
    assert closed.completed_at is not None
    assert closed.closed_at is not None

    with Session(test_engine) as session:
        photos = session.exec(select(TaskPhoto).where(TaskPhoto.task_id == task.id)).all()
        system_actions = session.exec(
            select(TaskAction).where(TaskAction.task_id == task.id).where(TaskAction.is_system == True)  # noqa: E712
        ).all()
    assert sorted(photo.photo_type.value for photo in photos) == ["after", "before"]
    assert len(system_actions) == 4

    by_type: dict[NotificationType, list[str]] = {}
    for row in _notifications(test_engine):
        by_type.setdefault(row.type, []).append(row.user_id)
    assert by_type[NotificationType.TASK_COMPLETED] == ["inspector-1"]
    assert sorted(by_type[NotificationType.TASK_CLOSED]) == ["inspector-1", "responsible-1"]

    with pytest.raises(InvalidTransitionError):
        service.transition(people["admin"], task.id, TaskTransitionRequest(status=TaskStatus.REJECTED, rejection_reason="late"))


def test_completion_requires_note_and_after_photo(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")

    with pytest.raises(ValidationError):
        service.transition(
            people["responsible"],
            task.id,
            TaskTransitionRequest(status=TaskStatus.COMPLETED, note="done", photos=[]),
        )
    with pytest.raises(ValidationError):
        service.transition(
            people["responsible"],
            task.id,
            TaskTransitionRequest(status=TaskStatus.COMPLETED, note="   ", photos=[_photo("after-1")]),
        )


def test_critical_completion_without_after_photo_keeps_status(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], severity=5, responsible_id="responsible-1")

    with pytest.raises(ValidationError):
        service.transition(
            people["responsible"],
            task.id,
            TaskTransitionRequest(status=TaskStatus.COMPLETED, note="Barrier erected", photos=[]),
        )

    reloaded, _photos, actions = service.get_task(people["admin"], task.id)
    assert reloaded.status == TaskStatus.OPEN
    assert reloaded.version == 1
    assert reloaded.completed_at is None
    assert len(actions) == 1


def test_close_requires_admin(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    _complete(service, people["responsible"], task.id)

    for actor in (people["inspector"], people["responsible"]):
        with pytest.raises(AuthorizationError):
            service.transition(actor, task.id, TaskTransitionRequest(status=TaskStatus.CLOSED))


def test_only_assigned_responsible_may_work_task(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    with pytest.raises(AuthorizationError):
        service.transition(
            people["other_responsible"],
            task.id,
            TaskTransitionRequest(status=TaskStatus.IN_PROGRESS),
        )


def test_illegal_edge_is_reported_before_role(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    with pytest.raises(InvalidTransitionError):
        service.transition(people["responsible"], task.id, TaskTransitionRequest(status=TaskStatus.CLOSED))


def test_inactive_actor_cannot_transition(service: TaskService, people: dict[str, Actor], test_engine: Engine) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    inactive = Actor(id="responsible-1", role=UserRole.RESPONSIBLE, is_active=False)
    with pytest.raises(AuthorizationError):
        service.transition(inactive, task.id, TaskTransitionRequest(status=TaskStatus.IN_PROGRESS))


def test_reject_requires_reason_and_reopen_clears_it(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    _complete(service, people["responsible"], task.id)

    with pytest.raises(ValidationError):
        service.transition(people["admin"], task.id, TaskTransitionRequest(status=TaskStatus.REJECTED))

    rejected = service.transition(
        people["admin"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.REJECTED, rejection_reason="Guard rail height below 1m"),
    )
    assert rejected.status == TaskStatus.REJECTED
    assert rejected.rejection_reason == "Guard rail height below 1m"

    rejected_rows = [row for row in _notifications(test_engine) if row.type == NotificationType.TASK_REJECTED]
    assert [row.user_id for row in rejected_rows] == ["responsible-1"]
    assert "Guard rail height below 1m" in (rejected_rows[0].message or "")

    reopened = service.transition(
        people["responsible"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.IN_PROGRESS),
    )
    assert reopened.status == TaskStatus.IN_PROGRESS
    assert reopened.rejection_reason is None
    assert reopened.completed_at is None
    assert reopened.closed_at is None


def test_rejected_task_can_be_completed_directly(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    service.transition(
        people["admin"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.REJECTED, rejection_reason="Wrong location"),
    )
    completed = _complete(service, people["responsible"], task.id)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.rejection_reason is None
    assert completed.completed_at is not None


def test_same_state_request_is_noop(service: TaskService, people: dict[str, Actor], test_engine: Engine) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    started = service.transition(people["responsible"], task.id, TaskTransitionRequest(status=TaskStatus.IN_PROGRESS))
    again = service.transition(people["responsible"], task.id, TaskTransitionRequest(status=TaskStatus.IN_PROGRESS))

    assert again.version == started.version
    with Session(test_engine) as session:
        actions = session.exec(select(TaskAction).where(TaskAction.task_id == task.id)).all()
    assert len(actions) == 2


def test_same_state_request_requires_participant(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")

    for outsider in (people["other_responsible"], people["other_inspector"]):
        with pytest.raises(AuthorizationError):
            service.transition(outsider, task.id, TaskTransitionRequest(status=TaskStatus.OPEN))

    assert service.transition(people["admin"], task.id, TaskTransitionRequest(status=TaskStatus.OPEN)).version == 1
    assert service.transition(people["inspector"], task.id, TaskTransitionRequest(status=TaskStatus.OPEN)).version == 1


def test_reassignment_moves_task_to_new_responsible(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"])
    assigned = service.transition(
        people["inspector"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.OPEN, responsible_id="responsible-1"),
    )
    assert assigned.status == TaskStatus.OPEN

    reassigned = service.transition(
        people["inspector"],
        task.id,
        TaskTransitionRequest(status=TaskStatus.OPEN, responsible_id="responsible-2"),
    )
    assert reassigned.responsible_id == "responsible-2"
    assigned_to = [row.user_id for row in _notifications(test_engine) if row.type == NotificationType.TASK_ASSIGNED]
    assert assigned_to == ["responsible-1", "responsible-2"]

    with pytest.raises(AuthorizationError):
        service.transition(
            people["other_inspector"],
            task.id,
            TaskTransitionRequest(status=TaskStatus.OPEN, responsible_id="responsible-1"),
        )


def test_assigning_without_responsible_is_invalid(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"])
    with pytest.raises(ValidationError):
        service.transition(people["inspector"], task.id, TaskTransitionRequest(status=TaskStatus.OPEN))


def test_stale_expected_version_conflicts(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    service.transition(people["responsible"], task.id, TaskTransitionRequest(status=TaskStatus.IN_PROGRESS))

    with pytest.raises(ConflictError):
        _complete(service, people["responsible"], task.id, expected_version=1)


def test_concurrent_writer_loses_version_race(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    service.transition(people["responsible"], task.id, TaskTransitionRequest(status=TaskStatus.IN_PROGRESS))

    # ``task`` still carries version 1, as a second request that loaded it earlier would.
    assert task.version == 1
    with Session(test_engine) as session:
        with pytest.raises(ConflictError):
            service._apply_versioned(session, task, {"status": TaskStatus.COMPLETED})
        current = session.get(type(task), task.id)
    assert current is not None
    assert current.status == TaskStatus.IN_PROGRESS
    assert current.version == 2


def test_dispatch_failure_does_not_undo_transition(people: dict[str, Actor], test_engine: Engine) -> None:
    service = TaskService(dispatcher=ExplodingDispatcher(RecordingGateway()))
    task = _create(service, people["inspector"], responsible_id="responsible-1")
    completed = _complete(service, people["responsible"], task.id)

    assert completed.status == TaskStatus.COMPLETED
    assert _notifications(test_engine) == []


def test_update_assigns_unassigned_task_once(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"])

    updated = service.update_task(people["inspector"], task.id, TaskUpdate(responsible_id="responsible-1"))
    assert updated.status == TaskStatus.OPEN
    assert updated.version == 2

    same = service.update_task(people["inspector"], task.id, TaskUpdate(responsible_id="responsible-1"))
    assert same.version == 2
    assigned = [row for row in _notifications(test_engine) if row.type == NotificationType.TASK_ASSIGNED]
    assert len(assigned) == 1

    with pytest.raises(ValidationError):
        service.update_task(people["inspector"], task.id, TaskUpdate(responsible_id=None))


def test_update_rules(service: TaskService, people: dict[str, Actor]) -> None:
    task = _create(service, people["inspector"], severity=2, responsible_id="responsible-1")

    updated = service.update_task(people["inspector"], task.id, TaskUpdate(severity=5, floor="B1"))
    assert updated.severity == 5
    assert updated.floor == "B1"
    assert updated.due_date == task.due_date

    with pytest.raises(AuthorizationError):
        service.update_task(people["other_inspector"], task.id, TaskUpdate(floor="B2"))
    with pytest.raises(AuthorizationError):
        service.update_task(people["responsible"], task.id, TaskUpdate(floor="B2"))
    with pytest.raises(ValidationError):
        service.update_task(people["inspector"], task.id, TaskUpdate(description=None))
    with pytest.raises(ConflictError):
        service.update_task(people["inspector"], task.id, TaskUpdate(floor="B3", expected_version=1))

    _complete(service, people["responsible"], task.id)
    with pytest.raises(ValidationError):
        service.update_task(people["admin"], task.id, TaskUpdate(due_date=date(2026, 5, 1)))

    service.transition(people["admin"], task.id, TaskTransitionRequest(status=TaskStatus.CLOSED))
    with pytest.raises(ConflictError):
        service.update_task(people["admin"], task.id, TaskUpdate(floor="B4"))


def test_mark_viewed_notifies_inspector_once(
    service: TaskService,
    people: dict[str, Actor],
    test_engine: Engine,
) -> None:
    task = _create(service, people["inspector"], responsible_id="responsible-1")

    unchanged = service.mark_viewed(people["inspector"], task.id)
    assert unchanged.viewed_at is None

    viewed = service.mark_viewed(people["responsible"], task.id)
    assert viewed.viewed_at is not None
    service.mark_viewed(people["responsible"], task.id)

    rows = [row for row in _notifications(test_engine) if row.type == NotificationType.TASK_VIEWED]
    assert [row.user_id for row in rows] == ["inspector-1"]


def test_responsible_sees_only_own_tasks(service: TaskService, people: dict[str, Actor]) -> None:
    mine = _create(service, people["inspector"], responsible_id="responsible-1")
    _create(service, people["inspector"], responsible_id="responsible-2")
    _create(service, people["inspector"])

    listed = service.list_tasks(people["responsible"])
    assert [task.id for task in listed] == [mine.id]
    assert len(service.list_tasks(people["admin"])) == 3
    assert len(service.list_tasks(people["admin"], status=TaskStatus.UNASSIGNED)) == 1

    other = service.list_tasks(people["admin"], responsible_id="responsible-2")[0]
    with pytest.raises(AuthorizationError):
        service.get_task(people["responsible"], other.id)

    stats = service.stats(people["admin"])
    assert stats.total == 3
    assert stats.by_status["open"] == 2
    assert stats.by_status["unassigned"] == 1
    assert stats.closure_rate == 0.0
