from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from orchestration.core.errors import ServiceError, to_http
from orchestration.deps.auth import require_auth
from orchestration.schemas.workflow import (
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
    ExecutionDetail,
    ExecutionSummary,
    RestoreVersionResponse,
    WorkflowCreate,
    WorkflowDetailResponse,
    WorkflowResponse,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowUpdateResponse,
    WorkflowVersionResponse,
)
from orchestration.services import workflow_engine, workflow_service

router = APIRouter(tags=["Workflows"])


@router.post("/workflows", response_model=WorkflowResponse, status_code=201)
def create_workflow(
    payload: WorkflowCreate,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_service.create_workflow(
            request.state.workspace_id,
            payload.model_dump(mode="json"),
            created_by=request.state.user_id,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.get("/workflows", response_model=List[WorkflowResponse])
def list_workflows(
    request: Request,
    status: Optional[WorkflowStatus] = None,
    team_id: Optional[str] = None,
    _auth: tuple[str, str] = Depends(require_auth),
):
    return workflow_service.list_workflows(request.state.workspace_id, status=status, team_id=team_id)


@router.get("/workflows/{workflow_id}", response_model=WorkflowDetailResponse)
def get_workflow(
    workflow_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_service.get_workflow(request.state.workspace_id, workflow_id)
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.patch("/workflows/{workflow_id}", response_model=WorkflowUpdateResponse)
def update_workflow(
    workflow_id: str,
    payload: WorkflowUpdate,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_service.update_workflow(
            request.state.workspace_id,
            workflow_id,
            payload.changes(),
            changed_by=request.state.user_id,
            change_description=payload.change_description,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.delete("/workflows/{workflow_id}")
def delete_workflow(
    workflow_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return {"success": workflow_service.delete_workflow(request.state.workspace_id, workflow_id)}
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.get("/workflows/{workflow_id}/versions", response_model=List[WorkflowVersionResponse])
def list_versions(
    workflow_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_service.list_versions(request.state.workspace_id, workflow_id)
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.post(
    "/workflows/{workflow_id}/versions/{version_id}/restore",
    response_model=RestoreVersionResponse,
)
def restore_version(
    workflow_id: str,
    version_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_service.restore_version(
            request.state.workspace_id,
            workflow_id,
            version_id,
            restored_by=request.state.user_id,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=ExecuteWorkflowResponse,
    status_code=202,
)
def execute_workflow(
    workflow_id: str,
    request: Request,
    payload: Optional[ExecuteWorkflowRequest] = None,
    _auth: tuple[str, str] = Depends(require_auth),
):
    payload = payload or ExecuteWorkflowRequest()
    try:
        execution_id = workflow_engine.execute_workflow(
            request.state.workspace_id,
            workflow_id,
            payload.model_dump(mode="json")["trigger_payload"],
            triggered_by=request.state.user_id,
            trigger_type=payload.trigger_type,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc

    return {"execution_id": execution_id, "status": "running"}


@router.get("/workflows/{workflow_id}/executions", response_model=List[ExecutionSummary])
def list_executions(
    workflow_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_engine.list_executions(request.state.workspace_id, workflow_id, limit=limit)
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.get("/executions/{execution_id}", response_model=ExecutionDetail)
def get_execution(
    execution_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_engine.get_execution(request.state.workspace_id, execution_id)
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionDetail)
def cancel_execution(
    execution_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return workflow_engine.cancel_execution(request.state.workspace_id, execution_id)
    except ServiceError as exc:
        raise to_http(exc) from exc
