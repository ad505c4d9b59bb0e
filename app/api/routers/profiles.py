from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import CurrentActor, get_profile_service
from app.api.errors import to_http_exception
from app.domain.errors import TrackerError
from app.domain.models import ProfileCreate, ProfileRead, ProfileUpdate
from app.domain.state_machine import UserRole
from app.services.profile_service import ProfileService

router = APIRouter()

Service = Annotated[ProfileService, Depends(get_profile_service)]


def _handle_profile_error(exc: TrackerError) -> NoReturn:
    raise to_http_exception(exc) from exc


@router.get("/me", response_model=ProfileRead)
def read_me(actor: CurrentActor, service: Service) -> ProfileRead:
    service.touch_last_seen(actor.id)
    try:
        return ProfileRead.model_validate(service.get_profile(actor, actor.id))
    except TrackerError as exc:
        _handle_profile_error(exc)


@router.get("", response_model=list[ProfileRead])
def list_profiles(
    actor: CurrentActor,
    service: Service,
    role: UserRole | None = None,
    active_only: bool = False,
) -> list[ProfileRead]:
    try:
        rows = service.list_profiles(actor, role=role, active_only=active_only)
    except TrackerError as exc:
        _handle_profile_error(exc)
    return [ProfileRead.model_validate(item) for item in rows]


@router.post("", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
def create_profile(payload: ProfileCreate, actor: CurrentActor, service: Service) -> ProfileRead:
    try:
        return ProfileRead.model_validate(service.create_profile(actor, payload))
    except TrackerError as exc:
        _handle_profile_error(exc)


@router.get("/{profile_id}", response_model=ProfileRead)
def get_profile(profile_id: str, actor: CurrentActor, service: Service) -> ProfileRead:
    try:
        return ProfileRead.model_validate(service.get_profile(actor, profile_id))
    except TrackerError as exc:
        _handle_profile_error(exc)


@router.patch("/{profile_id}", response_model=ProfileRead)
def update_profile(
    profile_id: str,
    payload: ProfileUpdate,
    actor: CurrentActor,
    service: Service,
) -> ProfileRead:
    try:
        return ProfileRead.model_validate(service.update_profile(actor, profile_id, payload))
    except TrackerError as exc:
        _handle_profile_error(exc)


@router.delete("/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile(profile_id: str, actor: CurrentActor, service: Service) -> Response:
    try:
        service.delete_profile(actor, profile_id)
    except TrackerError as exc:
        _handle_profile_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
