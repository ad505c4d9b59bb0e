from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, or_, select

from app.domain.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.domain.models import (
    Location,
    Notification,
    Profile,
    ProfileCreate,
    ProfileUpdate,
    Task,
    TaskAction,
    TaskPhoto,
    now_utc,
)
from app.domain.permissions import Actor, ensure_active, require_admin
from app.domain.state_machine import UserRole
from app.infra.db import get_engine
from app.infra.events import event_bus


class ProfileService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_profile(self, session: Session, profile_id: str) -> Profile:
        profile = session.get(Profile, profile_id)
        if profile is None:
            raise NotFoundError("profile not found")
        return profile

    def get_actor(self, profile_id: str) -> Actor | None:
        with self._session() as session:
            profile = session.get(Profile, profile_id)
            if profile is None:
                return None
            return Actor(
                id=profile.id,
                role=profile.role,
                full_name=profile.full_name,
                is_active=profile.is_active,
                is_super_admin=profile.is_super_admin,
            )

    def touch_last_seen(self, profile_id: str) -> None:
        with self._session() as session:
            session.execute(
                sa.update(Profile).where(col(Profile.id) == profile_id).values(last_seen=now_utc())
            )
            session.commit()

    def get_profile(self, actor: Actor, profile_id: str) -> Profile:
        ensure_active(actor)
        with self._session() as session:
            return self._get_profile(session, profile_id)

    def list_profiles(
        self,
        actor: Actor,
        *,
        role: UserRole | None = None,
        active_only: bool = False,
    ) -> list[Profile]:
        ensure_active(actor)
        with self._session() as session:
            statement = select(Profile)
            if role is not None:
                statement = statement.where(Profile.role == role)
            if active_only:
                statement = statement.where(col(Profile.is_active).is_(True))
            statement = statement.order_by(col(Profile.full_name).asc())
            return list(session.exec(statement).all())

    def create_profile(self, actor: Actor, payload: ProfileCreate) -> Profile:
        require_admin(actor)
        with self._session() as session:
            if session.get(Profile, payload.id) is not None:
                raise ConflictError("profile already exists")
            if payload.location_id is not None and session.get(Location, payload.location_id) is None:
                raise NotFoundError("location not found")
            profile = Profile(**payload.model_dump())
            profile.email = profile.email.strip().lower()
            session.add(profile)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email is already registered") from exc
            session.refresh(profile)
        event_bus.publish_dict(
            "profile.created",
            {"profile_id": profile.id, "role": profile.role.value},
            actor_id=actor.id,
        )
        return profile

    def update_profile(self, actor: Actor, profile_id: str, payload: ProfileUpdate) -> Profile:
        require_admin(actor)
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            profile = self._get_profile(session, profile_id)
            if profile.is_super_admin and not actor.is_super_admin:
                raise AuthorizationError("only a super admin can modify a super admin")
            for key in ("full_name", "role", "is_active"):
                if key in changes and changes[key] is None:
                    raise ValidationError(f"{key} cannot be null")
            if changes.get("location_id") is not None and session.get(Location, changes["location_id"]) is None:
                raise NotFoundError("location not found")
            for key, value in changes.items():
                setattr(profile, key, value)
            profile.updated_at = now_utc()
            session.add(profile)
            session.commit()
            session.refresh(profile)
        event_bus.publish_dict(
            "profile.updated",
            {"profile_id": profile.id, "fields": sorted(changes)},
            actor_id=actor.id,
        )
        return profile

    def delete_profile(self, actor: Actor, profile_id: str) -> None:
        ensure_active(actor)
        if not actor.is_super_admin:
            raise AuthorizationError("only a super admin can delete profiles")
        if profile_id == actor.id:
            raise ValidationError("cannot delete your own profile")
        with self._session() as session:
            profile = self._get_profile(session, profile_id)
            referenced = session.exec(
                select(Task.id).where(or_(Task.inspector_id == profile_id, Task.responsible_id == profile_id))
            ).first()
            if referenced is None:
                referenced = session.exec(select(TaskAction.id).where(TaskAction.user_id == profile_id)).first()
            if referenced is None:
                referenced = session.exec(select(TaskPhoto.id).where(TaskPhoto.uploaded_by == profile_id)).first()
            if referenced is not None:
                raise ConflictError("profile is referenced by tasks; deactivate it instead")
            session.execute(sa.delete(Notification).where(col(Notification.user_id) == profile_id))
            session.delete(profile)
            session.commit()
        event_bus.publish_dict("profile.deleted", {"profile_id": profile_id}, actor_id=actor.id)
