import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.schema import Index

from orchestration.database import Base, JSONDocument, utcnow

EXECUTION_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class WorkflowExecution(Base):
    __tablename__ = "agent_workflow_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    workflow_id = Column(
        String,
        ForeignKey("agent_workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = Column(String, nullable=False, default="running")

    trigger_type = Column(String, nullable=True)
    trigger_data = Column(JSONDocument, nullable=True)
    triggered_by = Column(String, nullable=True)

    # Step graph as it was when the run was triggered.
    steps = Column(JSONDocument, nullable=False)
    context = Column(JSONDocument, nullable=False)
    step_results = Column(JSONDocument, nullable=False)

    current_step_index = Column(Integer, nullable=False, default=0)
    current_step_id = Column(String, nullable=True)
    completed_steps = Column(Integer, nullable=False, default=0)
    total_steps = Column(Integer, nullable=False, default=0)

    # Set while the run is parked on an approval.
    awaiting_action_id = Column(String, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error = Column(JSONDocument, nullable=True)

    __table_args__ = (
        Index("ix_agent_workflow_executions_workflow_started", "workflow_id", "started_at"),
    )
