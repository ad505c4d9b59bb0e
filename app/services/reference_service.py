from __future__ import annotations

import sqlalchemy as sa
import structlog
from sqlmodel import Session, col, select

from app.domain.errors import NotFoundError, ValidationError
from app.domain.models import (
    CategoryCreate,
    CategoryUpdate,
    Location,
    LocationCreate,
    LocationUpdate,
    Profile,
    Task,
    TaskCategory,
    now_utc,
)
from app.domain.permissions import Actor, require_admin
from app.infra.db import get_engine
from app.infra.events import event_bus

logger = structlog.get_logger(__name__)


class ReferenceService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_location(self, session: Session, location_id: str) -> Location:
        location = session.get(Location, location_id)
        if location is None:
            raise NotFoundError("location not found")
        return location

    def _get_category(self, session: Session, category_id: str) -> TaskCategory:
        category = session.get(TaskCategory, category_id)
        if category is None:
            raise NotFoundError("category not found")
        return category

    def _validate_parent(self, session: Session, location_id: str | None, parent_id: str | None) -> None:
        if parent_id is None:
            return
        if parent_id == location_id:
            raise ValidationError("location cannot be its own parent")
        seen: set[str] = set()
        current: str | None = parent_id
        while current is not None:
            if current == location_id or current in seen:
                raise ValidationError("location parent chain would form a cycle")
            seen.add(current)
            current = self._get_location(session, current).parent_id

    def list_locations(self, *, active_only: bool = False) -> list[Location]:
        with self._session() as session:
            statement = select(Location)
            if active_only:
                statement = statement.where(col(Location.is_active).is_(True))
            statement = statement.order_by(col(Location.sort_order).asc(), col(Location.name).asc())
            return list(session.exec(statement).all())

    def get_location(self, location_id: str) -> Location:
        with self._session() as session:
            return self._get_location(session, location_id)

    def create_location(self, actor: Actor, payload: LocationCreate) -> Location:
        require_admin(actor)
        with self._session() as session:
            self._validate_parent(session, None, payload.parent_id)
            location = Location(**payload.model_dump())
            session.add(location)
            session.commit()
            session.refresh(location)
        event_bus.publish_dict("location.created", {"location_id": location.id}, actor_id=actor.id)
        return location

    def update_location(self, actor: Actor, location_id: str, payload: LocationUpdate) -> Location:
        require_admin(actor)
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            location = self._get_location(session, location_id)
            if "parent_id" in changes:
                self._validate_parent(session, location.id, changes["parent_id"])
            for key, value in changes.items():
                if key in {"name", "is_active", "sort_order"} and value is None:
                    raise ValidationError(f"{key} cannot be null")
                setattr(location, key, value)
            location.updated_at = now_utc()
            session.add(location)
            session.commit()
            session.refresh(location)
        event_bus.publish_dict(
            "location.updated",
            {"location_id": location.id, "fields": sorted(changes)},
            actor_id=actor.id,
        )
        return location

    def delete_location(self, actor: Actor, location_id: str) -> dict[str, int]:
        """Delete a location, detaching everything that pointed at it.

        Tasks and profiles keep existing with ``location_id`` cleared and child
        locations are promoted to top level. Nothing cascades.
        """
        require_admin(actor)
        with self._session() as session:
            location = self._get_location(session, location_id)
            detached: dict[str, int] = {}
            for name, model, field in (
                ("tasks", Task, "location_id"),
                ("profiles", Profile, "location_id"),
                ("locations", Location, "parent_id"),
            ):
                result = session.execute(
                    sa.update(model).where(getattr(model, field) == location_id).values({field: None})
                )
                detached[name] = int(getattr(result, "rowcount", 0) or 0)
            session.delete(location)
            session.commit()
        logger.info("location_deleted", location_id=location_id, detached=detached)
        event_bus.publish_dict(
            "location.deleted",
            {"location_id": location_id, "detached": detached},
            actor_id=actor.id,
        )
        return detached

    def list_categories(self, *, active_only: bool = False) -> list[TaskCategory]:
        with self._session() as session:
            statement = select(TaskCategory)
            if active_only:
                statement = statement.where(col(TaskCategory.is_active).is_(True))
            statement = statement.order_by(col(TaskCategory.sort_order).asc(), col(TaskCategory.name).asc())
            return list(session.exec(statement).all())

    def get_category(self, category_id: str) -> TaskCategory:
        with self._session() as session:
            return self._get_category(session, category_id)

    def create_category(self, actor: Actor, payload: CategoryCreate) -> TaskCategory:
        require_admin(actor)
        with self._session() as session:
            category = TaskCategory(**payload.model_dump())
            session.add(category)
            session.commit()
            session.refresh(category)
        event_bus.publish_dict("category.created", {"category_id": category.id}, actor_id=actor.id)
        return category

    def update_category(self, actor: Actor, category_id: str, payload: CategoryUpdate) -> TaskCategory:
        require_admin(actor)
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            category = self._get_category(session, category_id)
            for key, value in changes.items():
                if key in {"name", "color", "is_active", "sort_order"} and value is None:
                    raise ValidationError(f"{key} cannot be null")
                setattr(category, key, value)
            session.add(category)
            session.commit()
            session.refresh(category)
        event_bus.publish_dict(
            "category.updated",
            {"category_id": category.id, "fields": sorted(changes)},
            actor_id=actor.id,
        )
        return category

    def delete_category(self, actor: Actor, category_id: str) -> dict[str, int]:
        require_admin(actor)
        with self._session() as session:
            category = self._get_category(session, category_id)
            result = session.execute(
                sa.update(Task).where(col(Task.category_id) == category_id).values(category_id=None)
            )
            detached = {"tasks": int(getattr(result, "rowcount", 0) or 0)}
            session.delete(category)
            session.commit()
        logger.info("category_deleted", category_id=category_id, detached=detached)
        event_bus.publish_dict(
            "category.deleted",
            {"category_id": category_id, "detached": detached},
            actor_id=actor.id,
        )
        return detached
