"""initial scheduler schema

Revision ID: 5c1f0e7a9b21
Revises: 
Create Date: 2026-10-18 09:30:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "5c1f0e7a9b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100)),
        sa.Column("model", sa.String(length=100)),
        sa.Column("android_version", sa.String(length=20)),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_online_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )

    op.create_table(
        "device_groups",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )

    op.create_table(
        "device_group_members",
        sa.Column("group_id", sa.String(length=36), sa.ForeignKey("device_groups.id"), primary_key=True),
        sa.Column("device_id", sa.String(length=36), sa.ForeignKey("devices.id"), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "scripts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False, server_default="1.0.0"),
        sa.Column("content", sa.Text()),
        sa.Column("checksum", sa.String(length=64)),
        sa.Column("parameters", sa.Text()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timeout", sa.Integer(), nullable=False, server_default="3600"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_scripts_code", "scripts", ["code"], unique=True)

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("script_id", sa.String(length=36), sa.ForeignKey("scripts.id"), nullable=False),
        sa.Column("task_type", sa.String(length=20), nullable=False, server_default="immediate"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("target_type", sa.String(length=20), nullable=False, server_default="all"),
        sa.Column("target_group_id", sa.String(length=36)),
        sa.Column("target_device_ids", sa.Text()),
        sa.Column("parameters", sa.Text()),
        sa.Column("scheduled_time", sa.DateTime()),
        sa.Column("cron_expression", sa.String(length=100)),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_devices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_devices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_devices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_time", sa.DateTime()),
        sa.Column("end_time", sa.DateTime()),
        sa.Column("last_execution_time", sa.DateTime()),
        sa.Column("last_run_status", sa.String(length=20)),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_tasks_script_id", "tasks", ["script_id"])
    op.create_index("ix_tasks_status_priority", "tasks", ["status", "priority", "created_at"])

    op.create_table(
        "script_execution_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("task_id", sa.String(length=36), sa.ForeignKey("tasks.id"), nullable=True),
        sa.Column("script_id", sa.String(length=36), sa.ForeignKey("scripts.id"), nullable=False),
        sa.Column("device_id", sa.String(length=36), nullable=False),
        sa.Column("run_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("instruction_id", sa.String(length=40), nullable=False),
        sa.Column("parameters", sa.Text()),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("start_time", sa.DateTime()),
        sa.Column("end_time", sa.DateTime()),
        sa.Column("duration", sa.Float()),
        sa.Column("output", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
        sa.UniqueConstraint("instruction_id", name="uq_records_instruction_id"),
    )
    op.create_index("ix_script_execution_records_task_id", "script_execution_records", ["task_id"])
    op.create_index("ix_script_execution_records_device_id", "script_execution_records", ["device_id"])
    op.create_index(
        "ix_records_task_run_device", "script_execution_records", ["task_id", "run_number", "device_id"]
    )
    op.create_index("ix_records_status_available", "script_execution_records", ["status", "available_at"])


def downgrade() -> None:
    op.drop_index("ix_records_status_available", table_name="script_execution_records")
    op.drop_index("ix_records_task_run_device", table_name="script_execution_records")
    op.drop_index("ix_script_execution_records_device_id", table_name="script_execution_records")
    op.drop_index("ix_script_execution_records_task_id", table_name="script_execution_records")
    op.drop_table("script_execution_records")

    op.drop_index("ix_tasks_status_priority", table_name="tasks")
    op.drop_index("ix_tasks_script_id", table_name="tasks")
    op.drop_table("tasks")

    op.drop_index("ix_scripts_code", table_name="scripts")
    op.drop_table("scripts")

    op.drop_table("device_group_members")
    op.drop_table("device_groups")
    op.drop_table("devices")
