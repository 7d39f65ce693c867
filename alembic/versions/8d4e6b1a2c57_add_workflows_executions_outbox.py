"""add agent workflows, versions, executions and event_outbox

Revision ID: 8d4e6b1a2c57
Revises: 3f1c2a7d9b10
Create Date: 2026-10-05

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "8d4e6b1a2c57"
down_revision: Union[str, Sequence[str], None] = "3f1c2a7d9b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "agent_workflows",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("trigger_type", sa.String(), nullable=False, server_default="manual"),
        sa.Column("trigger_config", JSON_DOCUMENT, nullable=True),
        sa.Column("steps", JSON_DOCUMENT, nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("latest_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("successful_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.CheckConstraint(
            "status in ('draft','active','paused','archived')",
            name="ck_agent_workflows_status_valid",
        ),
        sa.CheckConstraint("latest_version >= 0", name="ck_agent_workflows_latest_version_nonnegative"),
    )
    op.create_index(op.f("ix_agent_workflows_workspace_id"), "agent_workflows", ["workspace_id"], unique=False)
    op.create_index(op.f("ix_agent_workflows_team_id"), "agent_workflows", ["team_id"], unique=False)
    op.create_index(
        "ix_agent_workflows_workspace_status", "agent_workflows", ["workspace_id", "status"], unique=False
    )

    op.create_table(
        "agent_workflow_versions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column(
            "workflow_id",
            sa.String(),
            sa.ForeignKey("agent_workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("trigger_config", JSON_DOCUMENT, nullable=True),
        sa.Column("steps", JSON_DOCUMENT, nullable=False),
        sa.Column("change_description", sa.Text(), nullable=True),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.UniqueConstraint("workflow_id", "version", name="uq_agent_workflow_versions_number"),
        sa.CheckConstraint("version >= 1", name="ck_agent_workflow_versions_positive"),
    )
    op.create_index(
        op.f("ix_agent_workflow_versions_workspace_id"), "agent_workflow_versions", ["workspace_id"], unique=False
    )
    op.create_index(
        op.f("ix_agent_workflow_versions_workflow_id"), "agent_workflow_versions", ["workflow_id"], unique=False
    )

    op.create_table(
        "agent_workflow_executions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column(
            "workflow_id",
            sa.String(),
            sa.ForeignKey("agent_workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="running"),
        sa.Column("trigger_type", sa.String(), nullable=True),
        sa.Column("trigger_data", JSON_DOCUMENT, nullable=True),
        sa.Column("triggered_by", sa.String(), nullable=True),
        sa.Column("steps", JSON_DOCUMENT, nullable=False),
        sa.Column("context", JSON_DOCUMENT, nullable=False),
        sa.Column("step_results", JSON_DOCUMENT, nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_step_id", sa.String(), nullable=True),
        sa.Column("completed_steps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("awaiting_action_id", sa.String(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", JSON_DOCUMENT, nullable=True),
        sa.CheckConstraint(
            "status in ('pending','running','completed','failed','cancelled')",
            name="ck_agent_workflow_executions_status_valid",
        ),
        sa.CheckConstraint(
            "(status in ('completed','failed','cancelled') AND completed_at IS NOT NULL)"
            " OR (status in ('pending','running') AND completed_at IS NULL)",
            name="ck_agent_workflow_executions_completed_at_consistent",
        ),
    )
    op.create_index(
        op.f("ix_agent_workflow_executions_workspace_id"), "agent_workflow_executions", ["workspace_id"], unique=False
    )
    op.create_index(
        op.f("ix_agent_workflow_executions_workflow_id"), "agent_workflow_executions", ["workflow_id"], unique=False
    )
    op.create_index(
        "ix_agent_workflow_executions_workflow_started",
        "agent_workflow_executions",
        ["workflow_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("payload", JSON_DOCUMENT, nullable=False),
        sa.Column("processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.UniqueConstraint("workspace_id", "event_type", "idempotency_key", name="uq_event_outbox_idempotency"),
    )

    op.create_index("ix_event_outbox_workspace_event", "event_outbox", ["workspace_id", "event_type"], unique=False)
    op.create_index("ix_event_outbox_processed", "event_outbox", ["processed", "available_at"], unique=False)
    op.create_index(op.f("ix_event_outbox_workspace_id"), "event_outbox", ["workspace_id"], unique=False)
    op.create_index(op.f("ix_event_outbox_event_type"), "event_outbox", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_event_outbox_event_type"), table_name="event_outbox")
    op.drop_index(op.f("ix_event_outbox_workspace_id"), table_name="event_outbox")
    op.drop_index("ix_event_outbox_processed", table_name="event_outbox")
    op.drop_index("ix_event_outbox_workspace_event", table_name="event_outbox")
    op.drop_table("event_outbox")

    op.drop_index("ix_agent_workflow_executions_workflow_started", table_name="agent_workflow_executions")
    op.drop_index(op.f("ix_agent_workflow_executions_workflow_id"), table_name="agent_workflow_executions")
    op.drop_index(op.f("ix_agent_workflow_executions_workspace_id"), table_name="agent_workflow_executions")
    op.drop_table("agent_workflow_executions")

    op.drop_index(op.f("ix_agent_workflow_versions_workflow_id"), table_name="agent_workflow_versions")
    op.drop_index(op.f("ix_agent_workflow_versions_workspace_id"), table_name="agent_workflow_versions")
    op.drop_table("agent_workflow_versions")

    op.drop_index("ix_agent_workflows_workspace_status", table_name="agent_workflows")
    op.drop_index(op.f("ix_agent_workflows_team_id"), table_name="agent_workflows")
    op.drop_index(op.f("ix_agent_workflows_workspace_id"), table_name="agent_workflows")
    op.drop_table("agent_workflows")
