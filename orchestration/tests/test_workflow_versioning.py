import threading

import pytest

from orchestration.core.errors import Conflict, InvalidRequest, NotFound
from orchestration.database import SessionLocal
from orchestration.models.workflow import WorkflowVersion
from orchestration.services import workflow_service

WS = "ws-1"


def _steps(*ids, action="log_event"):
    return [{"id": i, "name": f"Step {i}", "agent_id": "agent-1", "action": action, "inputs": {}} for i in ids]


def test_create_starts_without_versions(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    assert wf["latest_version"] == 0
    assert workflow_service.list_versions(WS, wf["id"]) == []


def test_create_rejects_cyclic_steps():
    steps = _steps("a", "b")
    steps[1]["on_success"] = "a"
    with pytest.raises(InvalidRequest, match="cycle"):
        workflow_service.create_workflow(WS, {"name": "Loop", "steps": steps})


def test_create_rejects_non_object_inputs():
    steps = _steps("a")
    steps[0]["inputs"] = ["not", "an", "object"]
    with pytest.raises(InvalidRequest, match="inputs"):
        workflow_service.create_workflow(WS, {"name": "Bad", "steps": steps})


def test_create_requires_known_team():
    with pytest.raises(NotFound, match="Team not found"):
        workflow_service.create_workflow(WS, {"name": "Orphan", "steps": [], "team_id": "nope"})


def test_step_change_snapshots_previous_state(workflow_factory, user_factory):
    editor = user_factory(first_name="Lin", last_name="Ng")
    wf = workflow_factory(steps=_steps("a"))

    result = workflow_service.update_workflow(
        WS,
        wf["id"],
        {"steps": _steps("a", "b")},
        changed_by=editor.id,
        change_description="Add step b",
    )
    assert result["version_saved"] is True
    assert result["version"] == 1
    assert [s["id"] for s in result["workflow"]["steps"]] == ["a", "b"]

    versions = workflow_service.list_versions(WS, wf["id"])
    assert len(versions) == 1
    assert versions[0]["version"] == 1
    assert [s["id"] for s in versions[0]["steps"]] == ["a"]
    assert versions[0]["change_description"] == "Add step b"
    assert versions[0]["changed_by_name"] == "Lin Ng"


def test_metadata_change_does_not_version(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))

    result = workflow_service.update_workflow(WS, wf["id"], {"name": "Renamed", "status": "paused"})
    assert result["version_saved"] is False
    assert result["version"] is None
    assert result["workflow"]["name"] == "Renamed"
    assert workflow_service.list_versions(WS, wf["id"]) == []


def test_update_rejects_unknown_fields(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    with pytest.raises(InvalidRequest):
        workflow_service.update_workflow(WS, wf["id"], {"latest_version": 99})


def test_versions_are_gapless_and_newest_first(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    for n in range(3):
        workflow_service.update_workflow(WS, wf["id"], {"trigger_config": {"n": n}})

    versions = workflow_service.list_versions(WS, wf["id"])
    assert [v["version"] for v in versions] == [3, 2, 1]


def test_restore_round_trip(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    workflow_service.update_workflow(WS, wf["id"], {"steps": _steps("a", "b")})
    workflow_service.update_workflow(WS, wf["id"], {"steps": _steps("x")})

    v1 = next(v for v in workflow_service.list_versions(WS, wf["id"]) if v["version"] == 1)
    restored = workflow_service.restore_version(WS, wf["id"], v1["id"], restored_by="user-9")

    assert restored["restored_from_version"] == 1
    assert restored["new_version"] == 3
    assert [s["id"] for s in restored["workflow"]["steps"]] == ["a"]

    versions = workflow_service.list_versions(WS, wf["id"])
    newest = versions[0]
    assert newest["version"] == 3
    assert [s["id"] for s in newest["steps"]] == ["x"]
    assert newest["change_description"] == "Before restoring version 1"
    assert newest["changed_by"] == "user-9"

    # Restoring the snapshot the first restore wrote undoes it.
    undone = workflow_service.restore_version(WS, wf["id"], newest["id"])
    assert undone["restored_from_version"] == 3
    assert undone["new_version"] == 4
    assert [s["id"] for s in undone["workflow"]["steps"]] == ["x"]


def test_restore_unknown_version_is_not_found(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    with pytest.raises(NotFound):
        workflow_service.restore_version(WS, wf["id"], "missing")


def test_concurrent_edits_never_share_a_version_number(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    workers = 4
    barrier = threading.Barrier(workers)
    errors = []

    def edit(n: int):
        barrier.wait()
        try:
            workflow_service.update_workflow(WS, wf["id"], {"trigger_config": {"editor": n}})
        except Conflict as exc:
            errors.append(exc)

    threads = [threading.Thread(target=edit, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    db = SessionLocal()
    try:
        numbers = sorted(v for (v,) in db.query(WorkflowVersion.version).filter(WorkflowVersion.workflow_id == wf["id"]))
    finally:
        db.close()

    assert numbers == list(range(1, len(numbers) + 1))
    assert len(numbers) + len(errors) == workers
    assert workflow_service.get_workflow(WS, wf["id"])["latest_version"] == len(numbers)


def test_get_workflow_includes_agents_and_is_workspace_scoped(workflow_factory, agent_factory):
    agent = agent_factory(name="Closer", agent_type="echo")
    steps = _steps("a")
    steps[0]["agent_id"] = agent.id
    wf = workflow_factory(steps=steps)

    detail = workflow_service.get_workflow(WS, wf["id"])
    assert detail["steps"][0]["agent"] == {"id": agent.id, "name": "Closer", "type": "echo", "status": "active"}
    assert detail["recent_executions"] == []

    with pytest.raises(NotFound):
        workflow_service.get_workflow("ws-2", wf["id"])


def test_delete_removes_versions(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    workflow_service.update_workflow(WS, wf["id"], {"steps": _steps("b")})

    assert workflow_service.delete_workflow(WS, wf["id"]) is True

    db = SessionLocal()
    try:
        assert db.query(WorkflowVersion).filter(WorkflowVersion.workflow_id == wf["id"]).count() == 0
    finally:
        db.close()
    with pytest.raises(NotFound):
        workflow_service.get_workflow(WS, wf["id"])


def test_update_rejects_clearing_required_fields(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    with pytest.raises(InvalidRequest, match="cannot be null: status, trigger_type"):
        workflow_service.update_workflow(WS, wf["id"], {"trigger_type": None, "status": None})
    assert workflow_service.list_versions(WS, wf["id"]) == []


def test_update_rejects_unknown_status(workflow_factory):
    wf = workflow_factory(steps=_steps("a"))
    with pytest.raises(InvalidRequest, match="status must be one of"):
        workflow_service.update_workflow(WS, wf["id"], {"status": "deleted"})
