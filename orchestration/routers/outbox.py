from typing import Optional

from pydantic import BaseModel
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from orchestration.core.authorization import Role, require_role
from orchestration.database import SessionLocal, as_utc
from orchestration.models.event_outbox import EventOutbox

router = APIRouter(prefix="/outbox", tags=["Outbox"])


class OutboxRow(BaseModel):
    id: int
    workspace_id: str
    event_type: str
    processed: bool
    retry_count: int
    created_at: str
    available_at: str
    processed_at: Optional[str]


class OutboxListResponse(BaseModel):
    limit: int
    offset: int
    rows: list[OutboxRow]


@router.get("", response_model=OutboxListResponse)
def list_outbox(
    request: Request,
    processed: Optional[bool] = None,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role=Depends(require_role(Role.MANAGER)),
):
    db: Session = SessionLocal()
    try:
        q = db.query(EventOutbox).filter(
            EventOutbox.workspace_id == str(request.state.workspace_id)
        )

        if processed is not None:
            q = q.filter(EventOutbox.processed == bool(processed))
        if event_type is not None:
            q = q.filter(EventOutbox.event_type == event_type)

        rows = (
            q.order_by(EventOutbox.id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )

        return {
            "limit": int(limit),
            "offset": int(offset),
            "rows": [
                {
                    "id": r.id,
                    "workspace_id": r.workspace_id,
                    "event_type": r.event_type,
                    "processed": r.processed,
                    "retry_count": r.retry_count,
                    "created_at": as_utc(r.created_at).isoformat(),
                    "available_at": as_utc(r.available_at).isoformat(),
                    "processed_at": None if r.processed_at is None else as_utc(r.processed_at).isoformat(),
                }
                for r in rows
            ],
        }
    finally:
        db.close()
