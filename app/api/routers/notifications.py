from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, Query

from app.api.deps import CurrentActor
from app.api.errors import to_http_exception
from app.domain.errors import TrackerError
from app.domain.models import DispatchResult, NotificationRead, NotifyRequest, UnreadCountRead
from app.domain.permissions import ensure_active
from app.services.notification_service import NotificationDispatcher

router = APIRouter()


def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


Dispatcher = Annotated[NotificationDispatcher, Depends(get_notification_dispatcher)]


def _handle_notification_error(exc: TrackerError) -> NoReturn:
    raise to_http_exception(exc) from exc


@router.post("/notify", response_model=DispatchResult)
def notify(payload: NotifyRequest, actor: CurrentActor, dispatcher: Dispatcher) -> DispatchResult:
    try:
        return dispatcher.notify_for_actor(actor, payload)
    except TrackerError as exc:
        _handle_notification_error(exc)


@router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    actor: CurrentActor,
    dispatcher: Dispatcher,
    unread_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[NotificationRead]:
    try:
        ensure_active(actor)
    except TrackerError as exc:
        _handle_notification_error(exc)
    rows = dispatcher.list_notifications(actor.id, unread_only=unread_only, limit=limit)
    return [NotificationRead.model_validate(item) for item in rows]


@router.get("/notifications/unread-count", response_model=UnreadCountRead)
def unread_count(actor: CurrentActor, dispatcher: Dispatcher) -> UnreadCountRead:
    return UnreadCountRead(unread=dispatcher.unread_count(actor.id))


@router.post("/notifications/read-all", response_model=UnreadCountRead)
def mark_all_read(actor: CurrentActor, dispatcher: Dispatcher) -> UnreadCountRead:
    dispatcher.mark_all_read(actor.id)
    return UnreadCountRead(unread=dispatcher.unread_count(actor.id))


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_read(notification_id: str, actor: CurrentActor, dispatcher: Dispatcher) -> NotificationRead:
    try:
        row = dispatcher.mark_read(notification_id, actor.id)
    except TrackerError as exc:
        _handle_notification_error(exc)
    return NotificationRead.model_validate(row)
