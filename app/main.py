from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import cron, notifications, profiles, reference, tasks
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.log import RequestIdMiddleware, setup_logging

setup_logging()

app = FastAPI(
    title="hse-action-tracker",
    description="HSE task lifecycle, notification dispatch and escalation sweeps.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)
app.add_middleware(RequestIdMiddleware)

app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(notifications.router, prefix="/api", tags=["notifications"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])
app.include_router(reference.router, prefix="/api", tags=["reference"])
app.include_router(profiles.router, prefix="/api/profiles", tags=["profiles"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
