from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.domain.errors import AuthorizationError
from app.domain.state_machine import UserRole

if TYPE_CHECKING:
    from app.domain.models import Task


@dataclass(frozen=True)
class Actor:
    id: str
    role: UserRole
    full_name: str = ""
    is_active: bool = True
    is_super_admin: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN or self.is_super_admin


def ensure_active(actor: Actor) -> None:
    if not actor.is_active:
        raise AuthorizationError("account is inactive")


def has_role(actor: Actor, roles: Iterable[UserRole]) -> bool:
    allowed = set(roles)
    if actor.is_admin and UserRole.ADMIN in allowed:
        return True
    return actor.role in allowed


def owns_task_as(actor: Actor, task: Task, role: UserRole) -> bool:
    if role == UserRole.ADMIN:
        return actor.is_admin
    if role == UserRole.INSPECTOR:
        return actor.role == UserRole.INSPECTOR and task.inspector_id == actor.id
    if role == UserRole.RESPONSIBLE:
        return actor.role == UserRole.RESPONSIBLE and task.responsible_id == actor.id
    return False


def may_act_on_task(actor: Actor, task: Task, roles: Iterable[UserRole]) -> bool:
    return any(owns_task_as(actor, task, role) for role in roles)


def require_admin(actor: Actor) -> None:
    ensure_active(actor)
    if not actor.is_admin:
        raise AuthorizationError("admin role required")


def can_create_task(actor: Actor) -> bool:
    return has_role(actor, (UserRole.ADMIN, UserRole.INSPECTOR))


def can_edit_task(actor: Actor, task: Task) -> bool:
    return may_act_on_task(actor, task, (UserRole.ADMIN, UserRole.INSPECTOR))


def can_delete_task(actor: Actor, task: Task) -> bool:
    if actor.is_super_admin:
        return True
    return actor.role == UserRole.ADMIN and task.inspector_id == actor.id
