import enum
import uuid

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.sql import func

from ..base import Base


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class MobileContainerStatus(str, enum.Enum):
    provisioning = "provisioning"
    running = "running"
    stopped = "stopped"
    error = "error"


LIVE_MOBILE_CONTAINER_STATUSES = (MobileContainerStatus.provisioning, MobileContainerStatus.running)
TERMINAL_MOBILE_CONTAINER_STATUSES = (MobileContainerStatus.stopped, MobileContainerStatus.error)

_LIVE_STATUS_SQL = "status IN ('provisioning', 'running')"


class MobileContainer(Base):
    __tablename__ = "mobile_containers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    provider_container_id = Column(String(160), nullable=False, index=True)
    provider_project_id = Column(String(64), nullable=True)
    provider_service_id = Column(String(64), nullable=True)
    metro_url = Column(String, nullable=False)

    status = Column(
        SQLEnum(MobileContainerStatus, values_callable=_enum_values),
        nullable=False,
        default=MobileContainerStatus.provisioning,
    )
    resource_usage = Column(JSONB, nullable=False, default=dict)
    uptime_seconds = Column(Integer, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    restart_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    last_activity_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_observed_at = Column(DateTime(timezone=True), nullable=True)
    stopped_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        # One live container per task. A racing second provision fails its insert
        # and is left for the reconciliation sweep.
        Index(
            "uq_mobile_containers_live_task",
            "task_id",
            unique=True,
            postgresql_where=text(_LIVE_STATUS_SQL),
            sqlite_where=text(_LIVE_STATUS_SQL),
        ),
        Index("ix_mobile_containers_status_activity", "status", "last_activity_at"),
    )


class ReconciliationReason(str, enum.Enum):
    create_ambiguous = "create_ambiguous"
    persist_failed = "persist_failed"
    orphaned = "orphaned"


class ReconciliationStatus(str, enum.Enum):
    pending = "pending"
    resolved = "resolved"
    failed = "failed"


class MobileContainerReconciliationCandidate(Base):
    __tablename__ = "mobile_container_reconciliation_candidates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    provider_container_id = Column(String(160), nullable=True)
    provider_project_id = Column(String(64), nullable=True)
    reason = Column(
        SQLEnum(ReconciliationReason, values_callable=_enum_values),
        nullable=False,
    )
    status = Column(
        SQLEnum(ReconciliationStatus, values_callable=_enum_values),
        nullable=False,
        default=ReconciliationStatus.pending,
        index=True,
    )
    detail = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
