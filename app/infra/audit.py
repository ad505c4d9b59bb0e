from __future__ import annotations

from typing import Any

import structlog
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import engine

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"

# Longest prefix first; the first match names the audited resource kind.
RESOURCE_KINDS: tuple[tuple[str, str], ...] = (
    ("/api/notifications", "notification"),
    ("/api/notify", "notification"),
    ("/api/categories", "category"),
    ("/api/locations", "location"),
    ("/api/profiles", "profile"),
    ("/api/tasks", "task"),
    ("/api/cron", "sweep"),
)
_VERBS = {"POST": "create", "PUT": "replace", "PATCH": "update", "DELETE": "delete", "GET": "run"}

logger = structlog.get_logger(__name__)


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def resource_kind(path: str) -> str | None:
    for prefix, kind in RESOURCE_KINDS:
        if path == prefix or path.startswith(f"{prefix}/"):
            return kind
    return None


def should_audit_request(method: str, path: str) -> bool:
    kind = resource_kind(path)
    if kind is None:
        return False
    # Sweeps are GET endpoints but mutate state.
    return method in WRITE_METHODS or kind == "sweep"


def default_action(method: str, path: str, path_params: dict[str, Any]) -> tuple[str, str]:
    kind = resource_kind(path) or "request"
    action = f"{kind}.{_VERBS.get(method, method.lower())}"
    if kind == "sweep":
        action = f"sweep.{path.rstrip('/').rsplit('/', 1)[-1]}"
    identifiers = [str(value) for value in path_params.values()]
    resource = f"{kind}:{identifiers[0]}" if identifiers else kind
    return action, resource


def outcome_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403}:
        return "denied"
    if status_code == 409:
        return "conflict"
    if status_code >= 400:
        return "rejected"
    return "success"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context: dict[str, Any] = dict(getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {}))
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        merged = dict(context.get("detail", {}))
        for section, values in detail.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section] = {**merged[section], **values}
            else:
                merged[section] = values
        context["detail"] = merged
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    """Persist one AuditLog row per tracker write request.

    Routes may refine the recorded action, resource and detail through
    :func:`set_audit_context`; otherwise they are derived from the path.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        method = request.method
        path = request.url.path
        context: dict[str, Any] = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        if not context and not should_audit_request(method, path):
            return response

        action, resource = default_action(method, path, dict(request.path_params))
        action = context.get("action", action)
        resource = context.get("resource", resource)
        actor_id = getattr(request.state, "actor_id", None)
        route = request.scope.get("route")

        detail: dict[str, Any] = {
            "who": {"actor_id": actor_id},
            "when": {"request_ts": now_utc().isoformat()},
            "where": {
                "route": getattr(route, "path", path),
                "request_id": getattr(request.state, "request_id", None),
                "client_ip": request.client.host if request.client is not None else None,
            },
            "what": {"action": action, "resource": resource},
            "result": {"status_code": response.status_code, "outcome": outcome_for(response.status_code)},
        }
        for section, values in context.get("detail", {}).items():
            if isinstance(values, dict) and isinstance(detail.get(section), dict):
                detail[section] = {**detail[section], **values}
            else:
                detail[section] = values

        try:
            write_audit_log(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.exception("audit_write_failed", action=action, resource=resource)
        return response
