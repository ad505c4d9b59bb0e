from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.domain.models import SweepResultRead
from app.infra.auth import verify_cron_credential
from app.services.sweep_service import SweepService

router = APIRouter()


def get_sweep_service() -> SweepService:
    return SweepService()


def require_cron_credential(authorization: Annotated[str | None, Header()] = None) -> None:
    if not verify_cron_credential(authorization):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


Service = Annotated[SweepService, Depends(get_sweep_service)]


@router.get("/overdue", response_model=SweepResultRead, dependencies=[Depends(require_cron_credential)])
def overdue_sweep(service: Service) -> SweepResultRead:
    return service.overdue_sweep()


@router.get("/reminder", response_model=SweepResultRead, dependencies=[Depends(require_cron_credential)])
def reminder_sweep(service: Service) -> SweepResultRead:
    return service.reminder_sweep()
