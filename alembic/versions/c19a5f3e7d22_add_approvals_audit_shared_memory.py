"""add pending actions, action audit log and shared memory

Revision ID: c19a5f3e7d22
Revises: 8d4e6b1a2c57
Create Date: 2026-10-06

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "c19a5f3e7d22"
down_revision: Union[str, Sequence[str], None] = "8d4e6b1a2c57"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "agent_pending_actions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("workflow_execution_id", sa.String(), nullable=True),
        sa.Column("workflow_step_id", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_data", JSON_DOCUMENT, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("risk_level", sa.String(), nullable=False),
        sa.Column("risk_reasons", JSON_DOCUMENT, nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.CheckConstraint(
            "risk_level in ('low','medium','high','critical')",
            name="ck_agent_pending_actions_risk_level_valid",
        ),
        sa.CheckConstraint(
            "status in ('pending','approved','rejected','expired','auto_approved')",
            name="ck_agent_pending_actions_status_valid",
        ),
    )
    for column in ("workspace_id", "team_id", "agent_id", "workflow_execution_id"):
        op.create_index(
            op.f(f"ix_agent_pending_actions_{column}"), "agent_pending_actions", [column], unique=False
        )
    op.create_index(
        "ix_agent_pending_actions_workspace_status",
        "agent_pending_actions",
        ["workspace_id", "status", "expires_at"],
        unique=False,
    )

    op.create_table(
        "agent_action_audit_log",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("workflow_execution_id", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_data", JSON_DOCUMENT, nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("was_automatic", sa.Boolean(), nullable=False),
        sa.Column("approval_id", sa.String(), nullable=True),
        sa.Column("risk_level", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("result", JSON_DOCUMENT, nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
    )
    for column in ("workspace_id", "team_id", "agent_id"):
        op.create_index(
            op.f(f"ix_agent_action_audit_log_{column}"), "agent_action_audit_log", [column], unique=False
        )

    op.create_table(
        "agent_shared_memory",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("memory_tier", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", JSON_DOCUMENT, nullable=True),
        sa.Column("metadata", JSON_DOCUMENT, nullable=False),
        sa.Column("importance", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.UniqueConstraint("workspace_id", "scope_key", "key", name="uq_agent_shared_memory_identity"),
        sa.CheckConstraint(
            "memory_tier in ('short_term','medium_term','long_term')",
            name="ck_agent_shared_memory_tier_valid",
        ),
        sa.CheckConstraint(
            "importance >= 0 AND importance <= 100",
            name="ck_agent_shared_memory_importance_range",
        ),
    )
    for column in ("workspace_id", "team_id", "agent_id"):
        op.create_index(
            op.f(f"ix_agent_shared_memory_{column}"), "agent_shared_memory", [column], unique=False
        )
    op.create_index(
        "ix_agent_shared_memory_rank",
        "agent_shared_memory",
        ["workspace_id", "importance", "updated_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_agent_shared_memory_rank", table_name="agent_shared_memory")
    for column in ("workspace_id", "team_id", "agent_id"):
        op.drop_index(op.f(f"ix_agent_shared_memory_{column}"), table_name="agent_shared_memory")
    op.drop_table("agent_shared_memory")

    for column in ("workspace_id", "team_id", "agent_id"):
        op.drop_index(op.f(f"ix_agent_action_audit_log_{column}"), table_name="agent_action_audit_log")
    op.drop_table("agent_action_audit_log")

    op.drop_index("ix_agent_pending_actions_workspace_status", table_name="agent_pending_actions")
    for column in ("workspace_id", "team_id", "agent_id", "workflow_execution_id"):
        op.drop_index(op.f(f"ix_agent_pending_actions_{column}"), table_name="agent_pending_actions")
    op.drop_table("agent_pending_actions")
