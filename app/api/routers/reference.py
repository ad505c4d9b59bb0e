from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, status

from app.api.deps import CurrentActor
from app.api.errors import to_http_exception
from app.domain.errors import TrackerError
from app.domain.models import (
    CategoryCreate,
    CategoryRead,
    CategoryUpdate,
    LocationCreate,
    LocationRead,
    LocationUpdate,
)
from app.services.reference_service import ReferenceService

router = APIRouter()


def get_reference_service() -> ReferenceService:
    return ReferenceService()


Service = Annotated[ReferenceService, Depends(get_reference_service)]


def _handle_reference_error(exc: TrackerError) -> NoReturn:
    raise to_http_exception(exc) from exc


@router.get("/locations", response_model=list[LocationRead])
def list_locations(_: CurrentActor, service: Service, active_only: bool = False) -> list[LocationRead]:
    return [LocationRead.model_validate(item) for item in service.list_locations(active_only=active_only)]


@router.post("/locations", response_model=LocationRead, status_code=status.HTTP_201_CREATED)
def create_location(payload: LocationCreate, actor: CurrentActor, service: Service) -> LocationRead:
    try:
        return LocationRead.model_validate(service.create_location(actor, payload))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.get("/locations/{location_id}", response_model=LocationRead)
def get_location(location_id: str, _: CurrentActor, service: Service) -> LocationRead:
    try:
        return LocationRead.model_validate(service.get_location(location_id))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.patch("/locations/{location_id}", response_model=LocationRead)
def update_location(
    location_id: str,
    payload: LocationUpdate,
    actor: CurrentActor,
    service: Service,
) -> LocationRead:
    try:
        return LocationRead.model_validate(service.update_location(actor, location_id, payload))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.delete("/locations/{location_id}")
def delete_location(location_id: str, actor: CurrentActor, service: Service) -> dict[str, dict[str, int]]:
    try:
        return {"detached": service.delete_location(actor, location_id)}
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.get("/categories", response_model=list[CategoryRead])
def list_categories(_: CurrentActor, service: Service, active_only: bool = False) -> list[CategoryRead]:
    return [CategoryRead.model_validate(item) for item in service.list_categories(active_only=active_only)]


@router.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
def create_category(payload: CategoryCreate, actor: CurrentActor, service: Service) -> CategoryRead:
    try:
        return CategoryRead.model_validate(service.create_category(actor, payload))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.get("/categories/{category_id}", response_model=CategoryRead)
def get_category(category_id: str, _: CurrentActor, service: Service) -> CategoryRead:
    try:
        return CategoryRead.model_validate(service.get_category(category_id))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.patch("/categories/{category_id}", response_model=CategoryRead)
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    actor: CurrentActor,
    service: Service,
) -> CategoryRead:
    try:
        return CategoryRead.model_validate(service.update_category(actor, category_id, payload))
    except TrackerError as exc:
        _handle_reference_error(exc)


@router.delete("/categories/{category_id}")
def delete_category(category_id: str, actor: CurrentActor, service: Service) -> dict[str, dict[str, int]]:
    try:
        return {"detached": service.delete_category(actor, category_id)}
    except TrackerError as exc:
        _handle_reference_error(exc)
