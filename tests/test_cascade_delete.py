from __future__ import annotations

from collections.abc import Generator
from datetime import date
from pathlib import Path
from typing import Any

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, select

from app import main as app_main
from app.api.routers.tasks import get_task_service
from app.domain.errors import AuthorizationError, CascadeDeleteError, NotFoundError
from app.domain.models import (
    EmailLog,
    EventRecord,
    Notification,
    Profile,
    Task,
    TaskAction,
    TaskCommentCreate,
    TaskCreate,
    TaskPhoto,
    TaskPhotoInput,
)
from app.domain.permissions import Actor
from app.domain.state_machine import UserRole
from app.infra import audit, db, events
from app.infra.auth import create_access_token
from app.infra.mailer import EmailSendResult
from app.services.notification_service import NotificationDispatcher
from app.services.task_service import TaskService

ADMIN = Actor(id="admin-1", role=UserRole.ADMIN, full_name="Admin One")
OTHER_ADMIN = Actor(id="admin-2", role=UserRole.ADMIN, full_name="Admin Two")
SUPER_ADMIN = Actor(id="super-1", role=UserRole.ADMIN, full_name="Super", is_super_admin=True)
INSPECTOR = Actor(id="inspector-1", role=UserRole.INSPECTOR, full_name="Inspector One")
RESPONSIBLE = Actor(id="responsible-1", role=UserRole.RESPONSIBLE, full_name="Responsible One")


class RecordingGateway:
    def send_email(self, *, to: str | list[str], subject: str, html: str) -> EmailSendResult:
        return EmailSendResult(success=True, message_id="<cascade@test>")


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    engine = db.build_engine(f"sqlite:///{tmp_path / 'cascade_test.db'}")
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(audit, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)

    with Session(engine) as session:
        for actor in (ADMIN, OTHER_ADMIN, SUPER_ADMIN, INSPECTOR, RESPONSIBLE):
            session.add(
                Profile(
                    id=actor.id,
                    full_name=actor.full_name,
                    email=f"{actor.id}@example.com",
                    role=actor.role,
                    is_super_admin=actor.is_super_admin,
                )
            )
        session.commit()
    yield engine
    engine.dispose()


@pytest.fixture()
def service(test_engine: Engine) -> TaskService:
    return TaskService(NotificationDispatcher(RecordingGateway()))


def _seed_task(service: TaskService, creator: Actor = ADMIN) -> Task:
    task = service.create_task(
        creator,
        TaskCreate(
            description="Unsecured scaffolding on east facade",
            severity=4,
            responsible_id=RESPONSIBLE.id,
            photos=[
                TaskPhotoInput(photo_url="https://cdn.example.com/1.jpg", storage_path="tasks/1.jpg"),
                TaskPhotoInput(photo_url="https://cdn.example.com/2.jpg", storage_path="tasks/2.jpg"),
            ],
        ),
        today=date(2026, 3, 10),
    )
    service.add_comment(RESPONSIBLE, task.id, TaskCommentCreate(comment="Scaffold crew booked for Monday"))
    return task


def _count(engine: Engine, model: Any, task_id: str) -> int:
    with Session(engine) as session:
        return len(session.exec(select(model).where(model.task_id == task_id)).all())


def test_delete_removes_task_and_dependents(service: TaskService, test_engine: Engine) -> None:
    task = _seed_task(service)
    assert _count(test_engine, Notification, task.id) == 1

    result = service.delete_task(ADMIN, task.id)

    assert result.task_id == task.id
    assert result.deleted_counts == {
        "task_photos": 2,
        "task_actions": 2,
        "notifications": 1,
        "tasks": 1,
    }
    for model in (TaskPhoto, TaskAction, Notification):
        assert _count(test_engine, model, task.id) == 0
    with Session(test_engine) as session:
        assert session.get(Task, task.id) is None
        assert session.exec(select(EmailLog).where(EmailLog.task_id == task.id)).all()
        deleted_events = session.exec(select(EventRecord).where(EventRecord.event_type == "task.deleted")).all()
    assert deleted_events[0].payload["serial_number"] == task.serial_number


def test_delete_authorization(service: TaskService, test_engine: Engine) -> None:
    task = _seed_task(service)

    for actor in (OTHER_ADMIN, INSPECTOR, RESPONSIBLE):
        with pytest.raises(AuthorizationError):
            service.delete_task(actor, task.id)
    with Session(test_engine) as session:
        assert session.get(Task, task.id) is not None

    assert service.delete_task(SUPER_ADMIN, task.id).deleted_counts["tasks"] == 1


def test_inspector_created_task_needs_super_admin(service: TaskService) -> None:
    task = _seed_task(service, creator=INSPECTOR)

    with pytest.raises(AuthorizationError):
        service.delete_task(ADMIN, task.id)
    assert service.delete_task(SUPER_ADMIN, task.id).deleted_counts["tasks"] == 1


def test_delete_unknown_task(service: TaskService) -> None:
    with pytest.raises(NotFoundError):
        service.delete_task(SUPER_ADMIN, "missing")


def test_failed_verification_rolls_back(
    monkeypatch: pytest.MonkeyPatch,
    service: TaskService,
    test_engine: Engine,
) -> None:
    task = _seed_task(service)
    monkeypatch.setattr(TaskService, "_remaining_children", lambda self, session, task_id: {"task_photos": 1})

    with pytest.raises(CascadeDeleteError) as excinfo:
        service.delete_task(ADMIN, task.id)

    assert excinfo.value.step == "verify"
    assert excinfo.value.deleted_counts["tasks"] == 1
    with Session(test_engine) as session:
        assert session.get(Task, task.id) is not None
    assert _count(test_engine, TaskPhoto, task.id) == 2
    assert _count(test_engine, TaskAction, task.id) == 2


def test_failing_child_delete_names_step_and_rolls_back(
    monkeypatch: pytest.MonkeyPatch,
    service: TaskService,
    test_engine: Engine,
) -> None:
    task = _seed_task(service)
    real_execute = Session.execute

    def execute(self: Session, statement: Any, *args: Any, **kwargs: Any) -> Any:
        if isinstance(statement, sa.Delete) and statement.table.name == "task_actions":
            raise OperationalError("DELETE FROM task_actions", {}, Exception("disk I/O error"))
        return real_execute(self, statement, *args, **kwargs)

    monkeypatch.setattr(Session, "execute", execute)

    with pytest.raises(CascadeDeleteError) as excinfo:
        service.delete_task(ADMIN, task.id)

    assert excinfo.value.step == "task_actions"
    assert excinfo.value.deleted_counts == {"task_photos": 2}
    with Session(test_engine) as session:
        assert session.get(Task, task.id) is not None
    assert _count(test_engine, TaskPhoto, task.id) == 2
    assert _count(test_engine, TaskAction, task.id) == 2
    assert _count(test_engine, Notification, task.id) == 1


def test_delete_endpoint(
    monkeypatch: pytest.MonkeyPatch,
    service: TaskService,
    test_engine: Engine,
) -> None:
    kept = _seed_task(service)
    removed = _seed_task(service)
    app_main.app.dependency_overrides[get_task_service] = lambda: service
    client = TestClient(app_main.app)
    headers = {"Authorization": f"Bearer {create_access_token(user_id=ADMIN.id)}"}
    try:
        ok = client.delete(f"/api/tasks/{removed.id}", headers=headers)
        assert ok.status_code == 200
        assert ok.json()["deleted_counts"]["tasks"] == 1

        assert client.delete(f"/api/tasks/{removed.id}", headers=headers).status_code == 404

        monkeypatch.setattr(TaskService, "_remaining_children", lambda self, session, task_id: {"notifications": 1})
        failed = client.delete(f"/api/tasks/{kept.id}", headers=headers)
        assert failed.status_code == 500
        detail = failed.json()["detail"]
        assert detail["code"] == "cascade_delete_failed"
        assert detail["step"] == "verify"
        assert detail["deleted_counts"]["task_photos"] == 2
    finally:
        client.close()
        app_main.app.dependency_overrides.clear()
