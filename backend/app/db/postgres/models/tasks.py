import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, String, Text
from sqlalchemy.sql import func

from ..base import Base


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class TaskPlatform(str, enum.Enum):
    web = "web"
    mobile = "mobile"
    ios = "ios"
    android = "android"


MOBILE_TASK_PLATFORMS = frozenset({TaskPlatform.mobile, TaskPlatform.ios, TaskPlatform.android})


class Task(Base):
    """User task as owned by the task CRUD layer. The mobile runtime only reads it."""

    __tablename__ = "tasks"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    prompt = Column(Text, nullable=True)
    platform = Column(
        SQLEnum(TaskPlatform, values_callable=_enum_values),
        nullable=False,
        default=TaskPlatform.web,
    )
    status = Column(String(32), nullable=False, default="pending")
    sandbox_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tasks_user_deleted", "user_id", "deleted_at"),
    )


def is_mobile_platform(platform) -> bool:
    return getattr(platform, "value", platform) in {p.value for p in MOBILE_TASK_PLATFORMS}
