import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.schema import Index, UniqueConstraint

from orchestration.database import Base, JSONDocument, utcnow


class Workflow(Base):
    __tablename__ = "agent_workflows"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    team_id = Column(String, nullable=True, index=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)

    trigger_type = Column(String, nullable=False, default="manual")
    trigger_config = Column(JSONDocument, nullable=True)
    steps = Column(JSONDocument, nullable=False)

    status = Column(String, nullable=False, default="draft")

    # Highest version number handed out; advanced by compare-and-increment.
    latest_version = Column(Integer, nullable=False, default=0)

    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_agent_workflows_workspace_status", "workspace_id", "status"),
    )


class WorkflowVersion(Base):
    __tablename__ = "agent_workflow_versions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    workflow_id = Column(
        String,
        ForeignKey("agent_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = Column(Integer, nullable=False)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False)
    trigger_config = Column(JSONDocument, nullable=True)
    steps = Column(JSONDocument, nullable=False)

    change_description = Column(Text, nullable=True)
    changed_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_agent_workflow_versions_number"),
    )
