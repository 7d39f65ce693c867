from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

TriggerType = Literal["manual", "event", "schedule", "agent_request"]
WorkflowStatus = Literal["draft", "active", "paused", "archived"]
ConditionOperator = Literal["equals", "not_equals", "contains", "greater_than", "less_than", "exists"]


class StepCondition(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: JsonValue = None


class RetryConfig(BaseModel):
    max_attempts: int = Field(ge=1, le=10)
    backoff_ms: int = Field(ge=0, le=3_600_000)
    # 1.0 keeps the wait fixed between attempts.
    backoff_multiplier: float = Field(default=1.0, ge=1.0, le=10.0)


class WorkflowStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    action: str = Field(min_length=1)
    inputs: Dict[str, JsonValue] = Field(default_factory=dict)
    conditions: Optional[List[StepCondition]] = None
    on_success: Optional[str] = None
    on_failure: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=0)
    retry_config: Optional[RetryConfig] = None


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    team_id: Optional[str] = None
    trigger_type: TriggerType = "manual"
    trigger_config: Optional[Dict[str, JsonValue]] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    status: WorkflowStatus = "draft"


class WorkflowUpdate(BaseModel):
    """Partial update. Only fields present in the request body are applied."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    team_id: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, JsonValue]] = None
    steps: Optional[List[WorkflowStep]] = None
    status: Optional[WorkflowStatus] = None
    change_description: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, mode="json")
        data.pop("change_description", None)
        return data


class ExecuteWorkflowRequest(BaseModel):
    trigger_payload: Dict[str, JsonValue] = Field(default_factory=dict)
    trigger_type: Optional[TriggerType] = None


class StepAgent(BaseModel):
    id: str
    name: str
    type: str
    status: str


class ExecutionSummary(BaseModel):
    id: str
    workflow_id: str
    status: str
    current_step_index: int
    current_step_id: Optional[str]
    completed_steps: int
    total_steps: int
    duration_ms: Optional[int]
    started_at: datetime
    completed_at: Optional[datetime]
    error: Optional[Dict[str, Any]]


class ExecutionDetail(ExecutionSummary):
    trigger_type: Optional[str]
    trigger_data: Optional[Dict[str, Any]]
    triggered_by: Optional[str]
    awaiting_action_id: Optional[str]
    context: Dict[str, Any]
    step_results: Dict[str, Any]


class WorkflowResponse(BaseModel):
    id: str
    workspace_id: str
    team_id: Optional[str]
    name: str
    description: Optional[str]
    category: Optional[str]
    trigger_type: str
    trigger_config: Optional[Dict[str, Any]]
    steps: List[Dict[str, Any]]
    status: str
    latest_version: int
    total_executions: int
    successful_executions: int
    last_executed_at: Optional[datetime]
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime


class WorkflowDetailResponse(WorkflowResponse):
    recent_executions: List[ExecutionSummary]


class WorkflowUpdateResponse(BaseModel):
    workflow: WorkflowResponse
    version_saved: bool
    version: Optional[int]


class WorkflowVersionResponse(BaseModel):
    id: str
    workflow_id: str
    version: int
    name: str
    description: Optional[str]
    trigger_type: str
    trigger_config: Optional[Dict[str, Any]]
    steps: List[Dict[str, Any]]
    change_description: Optional[str]
    changed_by: Optional[str]
    changed_by_name: Optional[str]
    created_at: datetime


class RestoreVersionResponse(BaseModel):
    workflow: WorkflowResponse
    restored_from_version: int
    new_version: int


class ExecuteWorkflowResponse(BaseModel):
    execution_id: str
    status: str
