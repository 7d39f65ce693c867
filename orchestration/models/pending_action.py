import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.schema import Index

from orchestration.database import Base, JSONDocument, utcnow

RISK_LEVELS = ("low", "medium", "high", "critical")
APPROVAL_STATUSES = ("pending", "approved", "rejected", "expired", "auto_approved")


class PendingAction(Base):
    __tablename__ = "agent_pending_actions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    team_id = Column(String, nullable=True, index=True)
    agent_id = Column(String, nullable=True, index=True)
    workflow_execution_id = Column(String, nullable=True, index=True)
    workflow_step_id = Column(String, nullable=True)

    action_type = Column(String, nullable=False)
    action_data = Column(JSONDocument, nullable=False)
    description = Column(Text, nullable=False)

    risk_level = Column(String, nullable=False)
    risk_reasons = Column(JSONDocument, nullable=False)

    # Leaves "pending" exactly once, via a conditional UPDATE.
    status = Column(String, nullable=False, default="pending")

    reviewer_id = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_agent_pending_actions_workspace_status", "workspace_id", "status", "expires_at"),
    )


class ActionAuditEntry(Base):
    """Append-only; rows are never updated."""

    __tablename__ = "agent_action_audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    team_id = Column(String, nullable=True, index=True)
    agent_id = Column(String, nullable=True, index=True)
    workflow_execution_id = Column(String, nullable=True)

    action_type = Column(String, nullable=False)
    action_data = Column(JSONDocument, nullable=True)
    description = Column(Text, nullable=True)

    was_automatic = Column(Boolean, nullable=False)
    approval_id = Column(String, nullable=True)
    risk_level = Column(String, nullable=True)

    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    result = Column(JSONDocument, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    executed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
