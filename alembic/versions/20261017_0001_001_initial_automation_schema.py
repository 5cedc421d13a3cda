"""Create catalogue, channel config and automation run tables.

Tables:
    - products, sub_products: content targets (read-only to the orchestrator)
    - channels, automation_configs: per-channel automation settings
    - automation_runs: one row per pipeline execution, with a partial unique
      index enforcing one starting/running run per channel
    - automation_run_steps: one row per external generation job
    - automation_run_logs: append-only run diagnostics

Revision ID: 001_initial_automation
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_automation"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

run_status = postgresql.ENUM(
    "starting", "running", "completed", "failed", "stopped", "cancelled",
    name="runstatus",
    create_type=False,
)
trigger_type = postgresql.ENUM("manual", "auto", name="triggertype", create_type=False)
step_type = postgresql.ENUM(
    "generate_image", "generate_video", "generate_voice", "merge_videos",
    name="steptype",
    create_type=False,
)
step_status = postgresql.ENUM(
    "pending", "running", "completed", "failed", "cancelled",
    name="stepstatus",
    create_type=False,
)
log_level = postgresql.ENUM("INFO", "SUCCESS", "WARN", "ERROR", name="loglevel", create_type=False)

ENUMS = [run_status, trigger_type, step_type, step_status, log_level]


def _id_column() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create enums, tables and indexes."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "products",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "sub_products",
        _id_column(),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(1024), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_sub_products_product_id", "sub_products", ["product_id"])

    op.create_table(
        "channels",
        _id_column(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("character_image_url", sa.String(1024), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "automation_configs",
        _id_column(),
        sa.Column(
            "channel_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("image_prompt_template", sa.Text(), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("video_prompt_template", sa.Text(), nullable=True),
        sa.Column("voice_script_template", sa.Text(), nullable=True),
        sa.Column("voice_id", sa.String(100), nullable=True),
        sa.Column("aspect_ratio", sa.String(10), nullable=False, server_default="1:1"),
        sa.Column("video_duration_seconds", sa.Float(), nullable=False, server_default="5"),
        sa.Column("transition", sa.String(30), nullable=False, server_default="fade"),
        sa.Column(
            "transition_duration_seconds", sa.Float(), nullable=False, server_default="1"
        ),
        sa.Column(
            "merge_videos_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column(
            "auto_run_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("auto_run_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "automation_runs",
        _id_column(),
        sa.Column(
            "channel_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("channels.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("status", run_status, nullable=False, server_default="starting"),
        sa.Column("trigger_type", trigger_type, nullable=False, server_default="manual"),
        _timestamp("started_at"),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_automation_runs_status", "automation_runs", ["status"])
    op.create_index(
        "ix_automation_runs_channel_started", "automation_runs", ["channel_id", "started_at"]
    )
    # At most one starting/running run per channel
    op.create_index(
        "uq_automation_runs_channel_active",
        "automation_runs",
        ["channel_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('starting', 'running')"),
    )

    op.create_table(
        "automation_run_steps",
        _id_column(),
        sa.Column(
            "run_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("automation_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sub_product_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sub_products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_type", step_type, nullable=False),
        sa.Column("status", step_status, nullable=False, server_default="pending"),
        sa.Column("input_data", sa.JSON(), nullable=False),
        sa.Column("output_data", sa.JSON(), nullable=True),
        sa.Column("external_task_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_automation_run_steps_status", "automation_run_steps", ["status"])
    op.create_index(
        "ix_automation_run_steps_run_id_status", "automation_run_steps", ["run_id", "status"]
    )
    op.create_index(
        "ix_automation_run_steps_run_sub_product",
        "automation_run_steps",
        ["run_id", "sub_product_id"],
    )

    op.create_table(
        "automation_run_logs",
        _id_column(),
        sa.Column(
            "run_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("automation_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "step_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("automation_run_steps.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("level", log_level, nullable=False, server_default="INFO"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_automation_run_logs_run_created", "automation_run_logs", ["run_id", "created_at"]
    )


def downgrade() -> None:
    """Drop tables and enums in reverse dependency order."""
    op.drop_table("automation_run_logs")
    op.drop_table("automation_run_steps")
    op.drop_table("automation_runs")
    op.drop_table("automation_configs")
    op.drop_table("channels")
    op.drop_table("sub_products")
    op.drop_table("products")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
