from typing import Tuple

from fastapi import HTTPException, Request

from orchestration.services.auth_service import verify_token


def _parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    return parts[1].strip()


def require_auth(request: Request) -> Tuple[str, str]:
    token = _parse_bearer_token(request)

    try:
        claims = verify_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = str(claims.get("sub"))
    token_workspace_id = str(claims.get("workspace_id"))

    header_workspace_id = request.headers.get("X-Workspace-Id")
    if header_workspace_id is None or not header_workspace_id.strip():
        raise HTTPException(status_code=403, detail="Missing X-Workspace-Id header")

    if header_workspace_id.strip() != token_workspace_id:
        raise HTTPException(status_code=403, detail="Workspace mismatch")

    request.state.user_id = user_id
    request.state.workspace_id = token_workspace_id
    request.state.claims = claims

    return user_id, token_workspace_id
