from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

import os
from orchestration.core.authorization import Role
from orchestration.services.auth_service import create_access_token

router = APIRouter(prefix="/auth", tags=["auth"])


class TokenRequest(BaseModel):
    user_id: str
    workspace_id: str
    role: Optional[Role] = None


@router.post("/token")
def issue_token(payload: TokenRequest):
    env = os.getenv("ENV", "dev").lower()
    if env not in {"dev", "local", "test"}:
        raise HTTPException(status_code=404, detail="Not Found")
    try:
        token = create_access_token(
            user_id=str(payload.user_id),
            workspace_id=str(payload.workspace_id),
            role=None if payload.role is None else payload.role.value,
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "access_token": token,
        "token_type": "bearer",
    }
