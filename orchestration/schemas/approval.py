from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

RiskLevel = Literal["low", "medium", "high", "critical"]
ApprovalStatus = Literal["pending", "approved", "rejected", "expired", "auto_approved"]


class QueueActionRequest(BaseModel):
    # Workflow-linked actions are only queued by the engine when a step parks.
    model_config = ConfigDict(extra="forbid")

    team_id: Optional[str] = None
    agent_id: Optional[str] = None
    action_type: str = Field(min_length=1)
    action_data: Dict[str, JsonValue] = Field(default_factory=dict)
    description: str = Field(min_length=1)
    expires_in_hours: Optional[float] = Field(default=None, gt=0)


class QueueActionResponse(BaseModel):
    action_id: str
    risk_level: RiskLevel
    expires_at: Optional[datetime]


class ResolveActionRequest(BaseModel):
    approved: bool
    review_notes: Optional[str] = None


class BulkResolveRequest(BaseModel):
    action_ids: List[str] = Field(min_length=1, max_length=200)
    approved: bool
    review_notes: Optional[str] = None


class BulkResolveResponse(BaseModel):
    processed: int
    failed: int


class PendingActionResponse(BaseModel):
    id: str
    workspace_id: str
    team_id: Optional[str]
    agent_id: Optional[str]
    workflow_execution_id: Optional[str]
    workflow_step_id: Optional[str]
    action_type: str
    action_data: Dict[str, Any]
    description: str
    risk_level: RiskLevel
    risk_reasons: List[str]
    status: ApprovalStatus
    reviewer_id: Optional[str]
    reviewed_at: Optional[datetime]
    review_notes: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime
    agent_name: Optional[str] = None
    team_name: Optional[str] = None
    reviewer_name: Optional[str] = None


class ResolutionResponse(BaseModel):
    action_id: str
    status: ApprovalStatus
    reviewer_id: str
    reviewed_at: datetime
    workflow_execution_id: Optional[str]


class PendingCountResponse(BaseModel):
    count: int


class AuditEntryResponse(BaseModel):
    id: str
    team_id: Optional[str]
    agent_id: Optional[str]
    workflow_execution_id: Optional[str]
    action_type: str
    action_data: Optional[Dict[str, Any]]
    description: Optional[str]
    was_automatic: bool
    approval_id: Optional[str]
    risk_level: Optional[str]
    success: bool
    error: Optional[str]
    result: Optional[Any]
    duration_ms: Optional[int]
    executed_at: datetime


class TeamAutonomyStatsResponse(BaseModel):
    team_id: str
    team_name: str
    autonomy_level: str
    total_actions: int
    auto_executed: int
    awaiting_approval: int
    approved_today: int
    rejected_today: int
    last_action_at: Optional[datetime]


class DepartmentMetricsResponse(BaseModel):
    department: str
    team_count: int
    active_teams: int
    total_actions: int
    auto_approved_actions: int
    manually_approved_actions: int
    rejected_actions: int
    pending_approvals: int
    success_rate: float
    avg_response_time_ms: float
