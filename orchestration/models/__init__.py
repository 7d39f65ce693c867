from orchestration.models.directory import Agent, AgentTeam, User
from orchestration.models.event_outbox import EventOutbox
from orchestration.models.pending_action import ActionAuditEntry, PendingAction
from orchestration.models.shared_memory import SharedMemoryEntry
from orchestration.models.workflow import Workflow, WorkflowVersion
from orchestration.models.workflow_execution import WorkflowExecution

__all__ = [
    "ActionAuditEntry",
    "Agent",
    "AgentTeam",
    "EventOutbox",
    "PendingAction",
    "SharedMemoryEntry",
    "User",
    "Workflow",
    "WorkflowExecution",
    "WorkflowVersion",
]
