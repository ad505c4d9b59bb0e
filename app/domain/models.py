from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, CheckConstraint, Column, Index
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from app.domain.state_machine import TaskStatus, UserRole


def now_utc() -> datetime:
    return datetime.now(UTC)


class PhotoType(StrEnum):
    BEFORE = "before"
    AFTER = "after"


class NotificationType(StrEnum):
    TASK_CREATED = "task_created"
    TASK_ASSIGNED = "task_assigned"
    TASK_VIEWED = "task_viewed"
    ACTION_ADDED = "action_added"
    TASK_COMPLETED = "task_completed"
    TASK_CLOSED = "task_closed"
    TASK_OVERDUE = "task_overdue"
    TASK_REMINDER = "task_reminder"
    USER_INVITED = "user_invited"
    TASK_REJECTED = "task_rejected"


class EmailStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    PENDING = "pending"


def _enum_values(enum_cls: type[StrEnum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum_column(enum_cls: type[StrEnum], name: str, *, nullable: bool = False, index: bool = False) -> Column:
    return Column(
        SAEnum(enum_cls, name=name, values_callable=_enum_values),
        nullable=nullable,
        index=index,
    )


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Location(SQLModel, table=True):
    __tablename__ = "locations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(max_length=200, index=True)
    code: str | None = Field(default=None, max_length=50)
    parent_id: str | None = Field(default=None, foreign_key="locations.id", index=True)
    is_active: bool = Field(default=True, index=True)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class TaskCategory(SQLModel, table=True):
    __tablename__ = "task_categories"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(max_length=200, index=True)
    color: str = Field(default="#6b7280", max_length=20)
    icon: str | None = Field(default=None, max_length=50)
    is_active: bool = Field(default=True, index=True)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: str = Field(primary_key=True)
    full_name: str = Field(max_length=200)
    email: str = Field(max_length=320, index=True, unique=True)
    phone: str | None = Field(default=None, max_length=50)
    role: UserRole = Field(
        default=UserRole.RESPONSIBLE,
        sa_column=_enum_column(UserRole, "user_role", index=True),
    )
    company: str | None = Field(default=None, max_length=200)
    title: str | None = Field(default=None, max_length=200)
    location_id: str | None = Field(default=None, foreign_key="locations.id", index=True)
    is_active: bool = Field(default=True, index=True)
    is_super_admin: bool = Field(default=False)
    last_seen: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_due_date", "status", "due_date"),
        Index("ix_tasks_responsible_status", "responsible_id", "status"),
        CheckConstraint("severity BETWEEN 1 AND 5", name="ck_tasks_severity_range"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    serial_number: str = Field(max_length=32, index=True, unique=True)
    inspector_id: str = Field(foreign_key="profiles.id", index=True)
    responsible_id: str | None = Field(default=None, foreign_key="profiles.id", index=True)
    location_id: str | None = Field(default=None, foreign_key="locations.id", index=True)
    category_id: str | None = Field(default=None, foreign_key="task_categories.id", index=True)
    floor: str | None = Field(default=None, max_length=50)
    exact_location: str | None = Field(default=None, max_length=500)
    work_type: str | None = Field(default=None, max_length=200)
    detection_method: str = Field(default="Field observation", max_length=200)
    description: str = Field(max_length=2000)
    severity: int = Field(index=True)
    action_required: str | None = None
    status: TaskStatus = Field(
        default=TaskStatus.UNASSIGNED,
        sa_column=_enum_column(TaskStatus, "task_status", index=True),
    )
    due_date: date | None = Field(default=None, index=True)
    rejection_reason: str | None = None
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)
    viewed_at: datetime | None = None
    completed_at: datetime | None = None
    closed_at: datetime | None = None


class TaskPhoto(SQLModel, table=True):
    __tablename__ = "task_photos"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    photo_url: str
    storage_path: str
    photo_type: PhotoType = Field(sa_column=_enum_column(PhotoType, "photo_type"))
    caption: str | None = None
    uploaded_by: str = Field(foreign_key="profiles.id", index=True)
    file_size: int | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class TaskAction(SQLModel, table=True):
    __tablename__ = "task_actions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    user_id: str = Field(foreign_key="profiles.id", index=True)
    comment: str = Field(max_length=2000)
    is_system: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_is_read", "user_id", "is_read"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="profiles.id", index=True)
    task_id: str | None = Field(default=None, foreign_key="tasks.id", index=True)
    type: NotificationType = Field(sa_column=_enum_column(NotificationType, "notification_type", index=True))
    title: str = Field(max_length=200)
    message: str | None = None
    is_read: bool = Field(default=False)
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EmailLog(SQLModel, table=True):
    __tablename__ = "email_logs"
    __table_args__ = (Index("ix_email_logs_task_recipient", "task_id", "to_email"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str | None = Field(default=None, index=True)
    to_email: str = Field(max_length=320)
    to_name: str | None = Field(default=None, max_length=200)
    email_type: NotificationType = Field(sa_column=_enum_column(NotificationType, "notification_type"))
    subject: str | None = None
    status: EmailStatus = Field(
        default=EmailStatus.PENDING,
        sa_column=_enum_column(EmailStatus, "email_status", index=True),
    )
    error_msg: str | None = None
    message_id: str | None = None
    retry_count: int = Field(default=0)
    sent_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ProfileCreate(BaseModel):
    id: str
    full_name: str = PydanticField(min_length=1, max_length=200)
    email: str = PydanticField(min_length=3, max_length=320)
    role: UserRole = UserRole.RESPONSIBLE
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    location_id: str | None = None
    is_active: bool = True


class ProfileUpdate(BaseModel):
    full_name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    phone: str | None = None
    role: UserRole | None = None
    company: str | None = None
    title: str | None = None
    location_id: str | None = None
    is_active: bool | None = None


class ProfileRead(ORMReadModel):
    id: str
    full_name: str
    email: str
    phone: str | None
    role: UserRole
    company: str | None
    title: str | None
    location_id: str | None
    is_active: bool
    is_super_admin: bool
    last_seen: datetime | None
    created_at: datetime


class LocationCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    code: str | None = PydanticField(default=None, max_length=50)
    parent_id: str | None = None
    is_active: bool = True
    sort_order: int = 0


class LocationUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    code: str | None = PydanticField(default=None, max_length=50)
    parent_id: str | None = None
    is_active: bool | None = None
    sort_order: int | None = None


class LocationRead(ORMReadModel):
    id: str
    name: str
    code: str | None
    parent_id: str | None
    is_active: bool
    sort_order: int
    created_at: datetime


class CategoryCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    color: str = PydanticField(default="#6b7280", max_length=20)
    icon: str | None = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    color: str | None = PydanticField(default=None, max_length=20)
    icon: str | None = None
    is_active: bool | None = None
    sort_order: int | None = None


class CategoryRead(ORMReadModel):
    id: str
    name: str
    color: str
    icon: str | None
    is_active: bool
    sort_order: int
    created_at: datetime


class TaskPhotoInput(BaseModel):
    photo_url: str = PydanticField(min_length=1)
    storage_path: str = PydanticField(min_length=1)
    caption: str | None = None
    file_size: int | None = PydanticField(default=None, ge=0)


class TaskCreate(BaseModel):
    description: str = PydanticField(min_length=10, max_length=2000)
    severity: int = PydanticField(ge=1, le=5)
    category_id: str | None = None
    location_id: str | None = None
    floor: str | None = None
    exact_location: str | None = None
    work_type: str | None = None
    detection_method: str = "Field observation"
    action_required: str | None = None
    responsible_id: str | None = None
    due_date: date | None = None
    photos: list[TaskPhotoInput] = PydanticField(default_factory=list)


class TaskUpdate(BaseModel):
    description: str | None = PydanticField(default=None, min_length=10, max_length=2000)
    severity: int | None = PydanticField(default=None, ge=1, le=5)
    category_id: str | None = None
    location_id: str | None = None
    floor: str | None = None
    exact_location: str | None = None
    work_type: str | None = None
    detection_method: str | None = None
    action_required: str | None = None
    responsible_id: str | None = None
    due_date: date | None = None
    expected_version: int | None = None


class TaskTransitionRequest(BaseModel):
    status: TaskStatus
    responsible_id: str | None = None
    note: str | None = None
    photos: list[TaskPhotoInput] = PydanticField(default_factory=list)
    rejection_reason: str | None = None
    expected_version: int | None = None


class TaskCommentCreate(BaseModel):
    comment: str = PydanticField(min_length=1, max_length=2000)


class TaskRead(ORMReadModel):
    id: str
    serial_number: str
    inspector_id: str
    responsible_id: str | None
    location_id: str | None
    category_id: str | None
    floor: str | None
    exact_location: str | None
    work_type: str | None
    detection_method: str
    description: str
    severity: int
    action_required: str | None
    status: TaskStatus
    due_date: date | None
    rejection_reason: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    viewed_at: datetime | None
    completed_at: datetime | None
    closed_at: datetime | None


class TaskPhotoRead(ORMReadModel):
    id: str
    task_id: str
    photo_url: str
    storage_path: str
    photo_type: PhotoType
    caption: str | None
    uploaded_by: str
    file_size: int | None
    created_at: datetime


class TaskActionRead(ORMReadModel):
    id: str
    task_id: str
    user_id: str
    comment: str
    is_system: bool
    created_at: datetime


class TaskDetailRead(BaseModel):
    task: TaskRead
    photos: list[TaskPhotoRead]
    actions: list[TaskActionRead]


class TaskStatsRead(BaseModel):
    total: int
    overdue: int
    by_status: dict[str, int]
    closure_rate: float


class CascadeDeleteRead(BaseModel):
    task_id: str
    deleted_counts: dict[str, int]


class NotifyRequest(BaseModel):
    task_id: str
    type: NotificationType
    rejection_reason: str | None = None


class RecipientDispatch(BaseModel):
    user_id: str
    email: str | None = None
    notification_id: str | None = None
    email_sent: bool = False
    error: str | None = None


class DispatchResult(BaseModel):
    task_id: str
    event_type: NotificationType
    recipients: list[RecipientDispatch] = PydanticField(default_factory=list)

    @property
    def notifications_written(self) -> int:
        return sum(1 for item in self.recipients if item.notification_id is not None)


class NotificationRead(ORMReadModel):
    id: str
    user_id: str
    task_id: str | None
    type: NotificationType
    title: str
    message: str | None
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class UnreadCountRead(BaseModel):
    unread: int


class SweepResultRead(BaseModel):
    selected_count: int
    notifications_sent: int
