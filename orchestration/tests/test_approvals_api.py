from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from orchestration.main import app
from orchestration.services import autonomy_service

client = TestClient(app)


def _auth_headers(workspace_id: str = "ws-1", user_id: str = "test", role: str = None) -> dict:
    body = {"user_id": user_id, "workspace_id": workspace_id}
    if role is not None:
        body["role"] = role
    r = client.post("/auth/token", json=body)
    assert r.status_code == 200, r.text
    token = r.json()["access_token"]
    return {"X-Workspace-Id": workspace_id, "Authorization": f"Bearer {token}"}


def _queue(headers, **overrides):
    body = {
        "action_type": "send_email",
        "action_data": {"to": "lead@example.com", "subject": "Intro"},
        "description": "Email the new lead",
    }
    body.update(overrides)
    return client.post("/approvals", json=body, headers=headers)


def test_queue_and_list_pending():
    headers = _auth_headers()

    r = _queue(headers)
    assert r.status_code == 201, r.text
    queued = r.json()
    assert queued["risk_level"] == "high"
    assert queued["expires_at"] is not None

    r = client.get("/approvals", headers=headers, params={"status": "pending"})
    assert r.status_code == 200
    assert [a["id"] for a in r.json()] == [queued["action_id"]]

    assert client.get("/approvals/count", headers=headers).json() == {"count": 1}

    r = client.get(f"/approvals/{queued['action_id']}", headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "pending"


def test_queue_rejects_invalid_action_data():
    r = _queue(_auth_headers(), action_data={"subject": "no recipient"})
    assert r.status_code == 400


def test_queue_rejects_non_positive_expiry():
    r = _queue(_auth_headers(), expires_in_hours=0)
    assert r.status_code == 422


def test_member_cannot_resolve():
    action_id = _queue(_auth_headers()).json()["action_id"]

    r = client.post(
        f"/approvals/{action_id}/resolve",
        json={"approved": True},
        headers=_auth_headers(role="MEMBER"),
    )
    assert r.status_code == 403


def test_second_resolve_is_409():
    action_id = _queue(_auth_headers()).json()["action_id"]
    manager = _auth_headers(user_id="manager-1", role="MANAGER")

    r = client.post(f"/approvals/{action_id}/resolve", json={"approved": True, "review_notes": "ok"}, headers=manager)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "approved"
    assert r.json()["reviewer_id"] == "manager-1"

    r = client.post(f"/approvals/{action_id}/resolve", json={"approved": False}, headers=manager)
    assert r.status_code == 409

    detail = client.get(f"/approvals/{action_id}", headers=manager).json()
    assert detail["status"] == "approved"
    assert detail["review_notes"] == "ok"


def test_resolving_expired_action_is_409():
    action = autonomy_service.queue_for_approval(
        "ws-1",
        action_type="create_task",
        action_data={},
        description="stale",
        expires_in_hours=1,
        now=datetime.now(timezone.utc) - timedelta(hours=2),
    )

    manager = _auth_headers(role="MANAGER")
    r = client.post(f"/approvals/{action.id}/resolve", json={"approved": True}, headers=manager)
    assert r.status_code == 409
    assert "expired" in r.json()["detail"]

    listed = client.get("/approvals", headers=manager, params={"status": "expired"}).json()
    assert [a["id"] for a in listed] == [action.id]


def test_resolve_in_other_workspace_is_404():
    action_id = _queue(_auth_headers()).json()["action_id"]

    r = client.post(
        f"/approvals/{action_id}/resolve",
        json={"approved": True},
        headers=_auth_headers(workspace_id="ws-2", role="MANAGER"),
    )
    assert r.status_code == 404


def test_bulk_resolve():
    headers = _auth_headers()
    ids = [_queue(headers).json()["action_id"] for _ in range(2)]

    r = client.post(
        "/approvals/bulk",
        json={"action_ids": ids + ["missing"], "approved": False, "review_notes": "batch"},
        headers=_auth_headers(role="ADMIN"),
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"processed": 2, "failed": 1}
    assert client.get("/approvals/count", headers=headers).json() == {"count": 0}


def test_audit_log_lists_resolutions():
    action_id = _queue(_auth_headers()).json()["action_id"]
    manager = _auth_headers(role="MANAGER")
    client.post(f"/approvals/{action_id}/resolve", json={"approved": True}, headers=manager)

    r = client.get("/approvals/audit", headers=manager, params={"was_automatic": False})
    assert r.status_code == 200
    entries = r.json()
    assert len(entries) == 1
    assert entries[0]["approval_id"] == action_id
    assert entries[0]["success"] is True


def test_queue_rejects_workflow_link_and_unknown_team():
    headers = _auth_headers()

    r = _queue(headers, workflow_execution_id="some-execution")
    assert r.status_code == 422

    r = _queue(headers, team_id="missing")
    assert r.status_code == 404
    assert client.get("/approvals/count", headers=headers).json() == {"count": 0}


def test_team_stats_and_department_metrics(team_factory):
    team = team_factory(name="Alpha", department="sales")
    _queue(_auth_headers(), team_id=team.id)

    assert client.get("/approvals/stats", headers=_auth_headers(role="MEMBER")).status_code == 403

    manager = _auth_headers(role="MANAGER")
    r = client.get("/approvals/stats", headers=manager)
    assert r.status_code == 200, r.text
    stats = r.json()
    assert [s["team_name"] for s in stats] == ["Alpha"]
    assert stats[0]["awaiting_approval"] == 1
    assert stats[0]["total_actions"] == 0

    r = client.get("/approvals/departments", headers=manager, params={"department": "sales"})
    assert r.status_code == 200, r.text
    assert r.json()[0]["pending_approvals"] == 1
    assert client.get("/approvals/departments", headers=manager, params={"department": "legal"}).json() == []
