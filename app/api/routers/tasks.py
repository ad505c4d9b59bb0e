from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, Query, Request, status

from app.api.deps import CurrentActor
from app.api.errors import to_http_exception
from app.domain.errors import TrackerError
from app.domain.models import (
    CascadeDeleteRead,
    TaskActionRead,
    TaskCommentCreate,
    TaskCreate,
    TaskDetailRead,
    TaskPhotoRead,
    TaskRead,
    TaskStatsRead,
    TaskTransitionRequest,
    TaskUpdate,
)
from app.domain.state_machine import TaskStatus
from app.infra.audit import set_audit_context
from app.services.task_service import TaskService

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService()


Service = Annotated[TaskService, Depends(get_task_service)]


def _handle_task_error(exc: TrackerError) -> NoReturn:
    raise to_http_exception(exc) from exc


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        task = service.create_task(actor, payload)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskRead.model_validate(task)


@router.get("", response_model=list[TaskRead])
def list_tasks(
    actor: CurrentActor,
    service: Service,
    task_status: Annotated[TaskStatus | None, Query(alias="status")] = None,
    responsible_id: str | None = None,
    inspector_id: str | None = None,
    location_id: str | None = None,
    category_id: str | None = None,
    severity: Annotated[int | None, Query(ge=1, le=5)] = None,
    overdue: bool | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 200,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[TaskRead]:
    try:
        rows = service.list_tasks(
            actor,
            status=task_status,
            responsible_id=responsible_id,
            inspector_id=inspector_id,
            location_id=location_id,
            category_id=category_id,
            severity=severity,
            overdue=overdue,
            limit=limit,
            offset=offset,
        )
    except TrackerError as exc:
        _handle_task_error(exc)
    return [TaskRead.model_validate(item) for item in rows]


@router.get("/stats", response_model=TaskStatsRead)
def task_stats(actor: CurrentActor, service: Service) -> TaskStatsRead:
    try:
        return service.stats(actor)
    except TrackerError as exc:
        _handle_task_error(exc)


@router.get("/{task_id}", response_model=TaskDetailRead)
def get_task(task_id: str, actor: CurrentActor, service: Service) -> TaskDetailRead:
    try:
        task, photos, actions = service.get_task(actor, task_id)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskDetailRead(
        task=TaskRead.model_validate(task),
        photos=[TaskPhotoRead.model_validate(item) for item in photos],
        actions=[TaskActionRead.model_validate(item) for item in actions],
    )


@router.patch("/{task_id}", response_model=TaskRead)
def update_task(task_id: str, payload: TaskUpdate, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        task = service.update_task(actor, task_id, payload)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskRead.model_validate(task)


@router.post("/{task_id}/transition", response_model=TaskRead)
def transition_task(
    task_id: str,
    payload: TaskTransitionRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.transition",
        resource=f"task:{task_id}",
        detail={"what": {"target_status": payload.status.value}},
    )
    try:
        task = service.transition(actor, task_id, payload)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskRead.model_validate(task)


@router.post("/{task_id}/comments", response_model=TaskActionRead, status_code=status.HTTP_201_CREATED)
def add_comment(
    task_id: str,
    payload: TaskCommentCreate,
    actor: CurrentActor,
    service: Service,
) -> TaskActionRead:
    try:
        action = service.add_comment(actor, task_id, payload)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskActionRead.model_validate(action)


@router.post("/{task_id}/viewed", response_model=TaskRead)
def mark_viewed(task_id: str, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        task = service.mark_viewed(actor, task_id)
    except TrackerError as exc:
        _handle_task_error(exc)
    return TaskRead.model_validate(task)


@router.delete("/{task_id}", response_model=CascadeDeleteRead)
def delete_task(task_id: str, request: Request, actor: CurrentActor, service: Service) -> CascadeDeleteRead:
    set_audit_context(request, action="task.delete", resource=f"task:{task_id}")
    try:
        return service.delete_task(actor, task_id)
    except TrackerError as exc:
        _handle_task_error(exc)
