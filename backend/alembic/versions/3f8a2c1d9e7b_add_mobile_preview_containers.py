"""add tasks, mobile preview containers and reconciliation candidates

Revision ID: 3f8a2c1d9e7b
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3f8a2c1d9e7b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


task_platform_enum = postgresql.ENUM(
    "web",
    "mobile",
    "ios",
    "android",
    name="taskplatform",
    create_type=False,
)

mobile_container_status_enum = postgresql.ENUM(
    "provisioning",
    "running",
    "stopped",
    "error",
    name="mobilecontainerstatus",
    create_type=False,
)

reconciliation_reason_enum = postgresql.ENUM(
    "create_ambiguous",
    "persist_failed",
    "orphaned",
    name="reconciliationreason",
    create_type=False,
)

reconciliation_status_enum = postgresql.ENUM(
    "pending",
    "resolved",
    "failed",
    name="reconciliationstatus",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    task_platform_enum.create(bind, checkfirst=True)
    mobile_container_status_enum.create(bind, checkfirst=True)
    reconciliation_reason_enum.create(bind, checkfirst=True)
    reconciliation_status_enum.create(bind, checkfirst=True)

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("platform", task_platform_enum, nullable=False, server_default="web"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("sandbox_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tasks_user_id"), "tasks", ["user_id"], unique=False)
    op.create_index("ix_tasks_user_deleted", "tasks", ["user_id", "deleted_at"], unique=False)

    op.create_table(
        "mobile_containers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("provider_container_id", sa.String(length=160), nullable=False),
        sa.Column("provider_project_id", sa.String(length=64), nullable=True),
        sa.Column("provider_service_id", sa.String(length=64), nullable=True),
        sa.Column("metro_url", sa.String(), nullable=False),
        sa.Column("status", mobile_container_status_enum, nullable=False, server_default="provisioning"),
        sa.Column("resource_usage", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("uptime_seconds", sa.Integer(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("restart_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_observed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mobile_containers_task_id"), "mobile_containers", ["task_id"], unique=False)
    op.create_index(op.f("ix_mobile_containers_user_id"), "mobile_containers", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_mobile_containers_provider_container_id"),
        "mobile_containers",
        ["provider_container_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_mobile_containers_last_activity_at"),
        "mobile_containers",
        ["last_activity_at"],
        unique=False,
    )
    op.create_index(
        "ix_mobile_containers_status_activity",
        "mobile_containers",
        ["status", "last_activity_at"],
        unique=False,
    )
    op.create_index(
        "uq_mobile_containers_live_task",
        "mobile_containers",
        ["task_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('provisioning', 'running')"),
    )

    op.create_table(
        "mobile_container_reconciliation_candidates",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_id", sa.String(length=64), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("provider_container_id", sa.String(length=160), nullable=True),
        sa.Column("provider_project_id", sa.String(length=64), nullable=True),
        sa.Column("reason", reconciliation_reason_enum, nullable=False),
        sa.Column("status", reconciliation_status_enum, nullable=False, server_default="pending"),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_mobile_container_reconciliation_candidates_task_id"),
        "mobile_container_reconciliation_candidates",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_mobile_container_reconciliation_candidates_status"),
        "mobile_container_reconciliation_candidates",
        ["status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_mobile_container_reconciliation_candidates_status"),
        table_name="mobile_container_reconciliation_candidates",
    )
    op.drop_index(
        op.f("ix_mobile_container_reconciliation_candidates_task_id"),
        table_name="mobile_container_reconciliation_candidates",
    )
    op.drop_table("mobile_container_reconciliation_candidates")

    op.drop_index("uq_mobile_containers_live_task", table_name="mobile_containers")
    op.drop_index("ix_mobile_containers_status_activity", table_name="mobile_containers")
    op.drop_index(op.f("ix_mobile_containers_last_activity_at"), table_name="mobile_containers")
    op.drop_index(op.f("ix_mobile_containers_provider_container_id"), table_name="mobile_containers")
    op.drop_index(op.f("ix_mobile_containers_user_id"), table_name="mobile_containers")
    op.drop_index(op.f("ix_mobile_containers_task_id"), table_name="mobile_containers")
    op.drop_table("mobile_containers")

    op.drop_index("ix_tasks_user_deleted", table_name="tasks")
    op.drop_index(op.f("ix_tasks_user_id"), table_name="tasks")
    op.drop_table("tasks")

    bind = op.get_bind()
    reconciliation_status_enum.drop(bind, checkfirst=True)
    reconciliation_reason_enum.drop(bind, checkfirst=True)
    mobile_container_status_enum.drop(bind, checkfirst=True)
    task_platform_enum.drop(bind, checkfirst=True)
