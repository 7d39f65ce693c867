from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from orchestration.core.authorization import Role, require_role
from orchestration.core.errors import ServiceError, to_http
from orchestration.deps.auth import require_auth
from orchestration.schemas.approval import (
    ApprovalStatus,
    AuditEntryResponse,
    BulkResolveRequest,
    BulkResolveResponse,
    DepartmentMetricsResponse,
    PendingActionResponse,
    PendingCountResponse,
    QueueActionRequest,
    QueueActionResponse,
    ResolutionResponse,
    ResolveActionRequest,
    RiskLevel,
    TeamAutonomyStatsResponse,
)
from orchestration.services import autonomy_service

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get("", response_model=List[PendingActionResponse])
def list_pending_actions(
    request: Request,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    status: Optional[ApprovalStatus] = None,
    risk_level: Optional[RiskLevel] = None,
    action_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return autonomy_service.get_pending_actions(
            request.state.workspace_id,
            team_id=team_id,
            agent_id=agent_id,
            status=status,
            risk_level=risk_level,
            action_type=action_type,
            limit=limit,
            offset=offset,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.get("/count", response_model=PendingCountResponse)
def pending_count(
    request: Request,
    team_id: Optional[str] = None,
    _auth: tuple[str, str] = Depends(require_auth),
):
    return {"count": autonomy_service.get_pending_count(request.state.workspace_id, team_id)}


@router.get("/audit", response_model=List[AuditEntryResponse])
def audit_log(
    request: Request,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    action_type: Optional[str] = None,
    was_automatic: Optional[bool] = None,
    success: Optional[bool] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role=Depends(require_role(Role.MANAGER)),
):
    return autonomy_service.get_audit_log(
        request.state.workspace_id,
        team_id=team_id,
        agent_id=agent_id,
        action_type=action_type,
        was_automatic=was_automatic,
        success=success,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=List[TeamAutonomyStatsResponse])
def team_autonomy_stats(
    request: Request,
    _role=Depends(require_role(Role.MANAGER)),
):
    return autonomy_service.get_team_autonomy_stats(request.state.workspace_id)


@router.get("/departments", response_model=List[DepartmentMetricsResponse])
def department_metrics(
    request: Request,
    department: Optional[str] = None,
    _role=Depends(require_role(Role.MANAGER)),
):
    return autonomy_service.get_department_metrics(request.state.workspace_id, department)


@router.post("", response_model=QueueActionResponse, status_code=201)
def queue_action(
    payload: QueueActionRequest,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        action = autonomy_service.queue_for_approval(
            request.state.workspace_id,
            action_type=payload.action_type,
            action_data=payload.model_dump(mode="json")["action_data"],
            description=payload.description,
            team_id=payload.team_id,
            agent_id=payload.agent_id,
            expires_in_hours=payload.expires_in_hours,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc

    return {"action_id": action.id, "risk_level": action.risk_level, "expires_at": action.expires_at}


@router.post("/bulk", response_model=BulkResolveResponse)
def bulk_resolve(
    payload: BulkResolveRequest,
    request: Request,
    _role=Depends(require_role(Role.MANAGER)),
):
    try:
        return autonomy_service.process_bulk_approval(
            request.state.workspace_id,
            payload.action_ids,
            payload.approved,
            request.state.user_id,
            payload.review_notes,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.get("/{action_id}", response_model=PendingActionResponse)
def get_pending_action(
    action_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return autonomy_service.get_pending_action(request.state.workspace_id, action_id)
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.post("/{action_id}/resolve", response_model=ResolutionResponse)
def resolve_action(
    action_id: str,
    payload: ResolveActionRequest,
    request: Request,
    _role=Depends(require_role(Role.MANAGER)),
):
    try:
        return autonomy_service.process_approval(
            request.state.workspace_id,
            action_id,
            payload.approved,
            request.state.user_id,
            payload.review_notes,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc
