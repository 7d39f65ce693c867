from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from orchestration.core.errors import ServiceError, to_http
from orchestration.deps.auth import require_auth
from orchestration.schemas.memory import (
    DeleteMemoryResponse,
    MemoryCategory,
    MemoryEntryResponse,
    MemoryTier,
    StoreMemoryRequest,
    StoreMemoryResponse,
)
from orchestration.services import memory_service

router = APIRouter(prefix="/memory", tags=["Shared Memory"])


@router.post("", response_model=StoreMemoryResponse)
def store_memory(
    payload: StoreMemoryRequest,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    data = payload.model_dump(mode="json")
    try:
        memory_id = memory_service.store(
            request.state.workspace_id,
            team_id=payload.team_id,
            agent_id=payload.agent_id,
            memory_tier=payload.memory_tier,
            category=payload.category,
            key=payload.key,
            value=data["value"],
            metadata=data["metadata"],
            importance=payload.importance,
            expires_at=payload.expires_at,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc

    return {"memory_id": memory_id}


@router.get("", response_model=List[MemoryEntryResponse])
def query_memory(
    request: Request,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    memory_tier: Optional[MemoryTier] = None,
    category: Optional[MemoryCategory] = None,
    key_pattern: Optional[str] = None,
    min_importance: Optional[int] = Query(default=None, ge=0, le=100),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return memory_service.query(
            request.state.workspace_id,
            team_id=team_id,
            agent_id=agent_id,
            memory_tier=memory_tier,
            category=category,
            key_pattern=key_pattern,
            min_importance=min_importance,
            limit=limit,
            offset=offset,
        )
    except ServiceError as exc:
        raise to_http(exc) from exc


@router.delete("/{memory_id}", response_model=DeleteMemoryResponse)
def delete_memory(
    memory_id: str,
    request: Request,
    _auth: tuple[str, str] = Depends(require_auth),
):
    try:
        return {"success": memory_service.delete(request.state.workspace_id, memory_id)}
    except ServiceError as exc:
        raise to_http(exc) from exc
