"""Workflow definitions and their version history.

Version numbers come from ``agent_workflows.latest_version``, advanced with
a conditional UPDATE (compare-and-increment) inside the same transaction
that writes the snapshot, so concurrent edits of one workflow serialize on
that row and numbers are never reused or skipped. The unique constraint on
(workflow_id, version) backs this up.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orchestration.core.errors import Conflict, InvalidRequest, NotFound
from orchestration.core.settings import Settings, load_settings
from orchestration.database import SessionLocal, as_utc, utcnow
from orchestration.models.directory import Agent, AgentTeam, User
from orchestration.models.workflow import Workflow, WorkflowVersion
from orchestration.models.workflow_execution import WorkflowExecution
from orchestration.services.step_graph import validate_steps
from orchestration.services.workflow_engine import execution_summary

logger = logging.getLogger(__name__)

VERSIONED_FIELDS = ("steps", "trigger_type", "trigger_config")
UPDATABLE_FIELDS = (
    "name",
    "description",
    "category",
    "team_id",
    "trigger_type",
    "trigger_config",
    "steps",
    "status",
)
# Columns that are NOT NULL; a partial update may change them but not clear them.
REQUIRED_FIELDS = ("name", "trigger_type", "steps", "status")
TRIGGER_TYPES = ("manual", "event", "schedule", "agent_request")
WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")


def serialize_workflow(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "workspace_id": workflow.workspace_id,
        "team_id": workflow.team_id,
        "name": workflow.name,
        "description": workflow.description,
        "category": workflow.category,
        "trigger_type": workflow.trigger_type,
        "trigger_config": workflow.trigger_config,
        "steps": list(workflow.steps or []),
        "status": workflow.status,
        "latest_version": int(workflow.latest_version or 0),
        "total_executions": int(workflow.total_executions or 0),
        "successful_executions": int(workflow.successful_executions or 0),
        "last_executed_at": as_utc(workflow.last_executed_at),
        "created_by": workflow.created_by,
        "created_at": as_utc(workflow.created_at),
        "updated_at": as_utc(workflow.updated_at),
    }


def _get_workflow_row(db: Session, workspace_id: str, workflow_id: str) -> Workflow:
    workflow = (
        db.query(Workflow)
        .filter(Workflow.id == str(workflow_id), Workflow.workspace_id == str(workspace_id))
        .populate_existing()
        .first()
    )
    if workflow is None:
        raise NotFound("Workflow not found")
    return workflow


def _require_team(db: Session, workspace_id: str, team_id: Optional[str]) -> None:
    if team_id is None:
        return
    team = (
        db.query(AgentTeam.id)
        .filter(AgentTeam.id == str(team_id), AgentTeam.workspace_id == str(workspace_id))
        .first()
    )
    if team is None:
        raise NotFound("Team not found")


def _check_steps(steps: Any) -> List[dict]:
    if not isinstance(steps, list) or not all(isinstance(s, dict) for s in steps):
        raise InvalidRequest("steps must be a list of step objects")
    for step in steps:
        if not isinstance(step.get("inputs", {}), dict):
            raise InvalidRequest(f"Step {step.get('id')} inputs must be a JSON object")
    validate_steps(steps)
    return steps


def _check_choice(field: str, value: Any, choices: tuple) -> None:
    if value not in choices:
        raise InvalidRequest(f"{field} must be one of: {', '.join(choices)}")


def _claim_next_version(db: Session, workspace_id: str, workflow_id: str, max_retries: int) -> int:
    for _ in range(max(1, int(max_retries))):
        seen = (
            db.query(Workflow.latest_version)
            .filter(Workflow.id == str(workflow_id), Workflow.workspace_id == str(workspace_id))
            .scalar()
        )
        if seen is None:
            raise NotFound("Workflow not found")

        result = db.execute(
            update(Workflow)
            .where(Workflow.id == str(workflow_id), Workflow.latest_version == seen)
            .values(latest_version=seen + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return int(seen) + 1

    raise Conflict("Workflow was modified concurrently; retry the edit")


def _snapshot(
    db: Session,
    workflow: Workflow,
    version: int,
    *,
    changed_by: Optional[str],
    change_description: Optional[str],
    now: datetime,
) -> WorkflowVersion:
    snapshot = WorkflowVersion(
        workspace_id=workflow.workspace_id,
        workflow_id=workflow.id,
        version=version,
        name=workflow.name,
        description=workflow.description,
        trigger_type=workflow.trigger_type,
        trigger_config=workflow.trigger_config,
        steps=list(workflow.steps or []),
        change_description=change_description,
        changed_by=changed_by,
        created_at=now,
    )
    db.add(snapshot)
    db.flush()
    return snapshot


def create_workflow(
    workspace_id: str,
    data: Dict[str, Any],
    *,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    name = (data.get("name") or "").strip()
    if not name:
        raise InvalidRequest("name is required")
    steps = _check_steps(data.get("steps") or [])
    trigger_type = data.get("trigger_type") or "manual"
    status = data.get("status") or "draft"
    _check_choice("trigger_type", trigger_type, TRIGGER_TYPES)
    _check_choice("status", status, WORKFLOW_STATUSES)
    now = now or utcnow()

    db = SessionLocal()
    try:
        _require_team(db, workspace_id, data.get("team_id"))

        workflow = Workflow(
            workspace_id=str(workspace_id),
            team_id=data.get("team_id"),
            name=name,
            description=data.get("description"),
            category=data.get("category"),
            trigger_type=trigger_type,
            trigger_config=data.get("trigger_config"),
            steps=steps,
            status=status,
            latest_version=0,
            total_executions=0,
            successful_executions=0,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        db.add(workflow)
        db.commit()

        logger.info(
            "Workflow created",
            extra={"workflow_id": workflow.id, "workspace_id": str(workspace_id), "steps": len(steps)},
        )
        return serialize_workflow(workflow)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def update_workflow(
    workspace_id: str,
    workflow_id: str,
    changes: Dict[str, Any],
    *,
    changed_by: Optional[str] = None,
    change_description: Optional[str] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply a partial update. Steps/trigger changes snapshot the pre-change state first."""
    settings = settings or load_settings()
    now = now or utcnow()

    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise InvalidRequest(f"Unknown fields: {', '.join(sorted(unknown))}")
    cleared = sorted(f for f in REQUIRED_FIELDS if f in changes and changes[f] is None)
    if cleared:
        raise InvalidRequest(f"Fields cannot be null: {', '.join(cleared)}")
    if "trigger_type" in changes:
        _check_choice("trigger_type", changes["trigger_type"], TRIGGER_TYPES)
    if "status" in changes:
        _check_choice("status", changes["status"], WORKFLOW_STATUSES)
    if "name" in changes and not (changes["name"] or "").strip():
        raise InvalidRequest("name cannot be empty")
    if "steps" in changes:
        changes = dict(changes, steps=_check_steps(changes["steps"]))

    versioned = any(f in changes for f in VERSIONED_FIELDS)

    db = SessionLocal()
    try:
        workflow = _get_workflow_row(db, workspace_id, workflow_id)
        if "team_id" in changes:
            _require_team(db, workspace_id, changes["team_id"])

        version = None
        if versioned:
            version = _claim_next_version(db, workspace_id, workflow_id, settings.version_cas_max_retries)
            # Snapshot what is committed now, under the row lock taken by the claim.
            workflow = _get_workflow_row(db, workspace_id, workflow_id)
            _snapshot(
                db,
                workflow,
                version,
                changed_by=changed_by,
                change_description=change_description or "Workflow updated",
                now=now,
            )

        for name, value in changes.items():
            setattr(workflow, name, value)
        workflow.updated_at = now

        db.commit()

        logger.info(
            "Workflow updated",
            extra={
                "workflow_id": workflow.id,
                "fields": sorted(changes),
                "version_saved": versioned,
                "version": version,
            },
        )
        return {
            "workflow": serialize_workflow(workflow),
            "version_saved": versioned,
            "version": version,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def list_versions(workspace_id: str, workflow_id: str) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        _get_workflow_row(db, workspace_id, workflow_id)

        rows = (
            db.query(WorkflowVersion)
            .filter(WorkflowVersion.workflow_id == str(workflow_id))
            .order_by(WorkflowVersion.version.desc())
            .all()
        )

        user_ids = {r.changed_by for r in rows if r.changed_by}
        names = {}
        if user_ids:
            names = {u.id: u.display_name for u in db.query(User).filter(User.id.in_(user_ids)).all()}

        return [
            {
                "id": r.id,
                "workflow_id": r.workflow_id,
                "version": r.version,
                "name": r.name,
                "description": r.description,
                "trigger_type": r.trigger_type,
                "trigger_config": r.trigger_config,
                "steps": list(r.steps or []),
                "change_description": r.change_description,
                "changed_by": r.changed_by,
                "changed_by_name": names.get(r.changed_by),
                "created_at": as_utc(r.created_at),
            }
            for r in rows
        ]
    finally:
        db.close()


def restore_version(
    workspace_id: str,
    workflow_id: str,
    version_id: str,
    *,
    restored_by: Optional[str] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Snapshot the live state as a new version, then copy the chosen version over it."""
    settings = settings or load_settings()
    now = now or utcnow()

    db = SessionLocal()
    try:
        _get_workflow_row(db, workspace_id, workflow_id)

        target = (
            db.query(WorkflowVersion)
            .filter(WorkflowVersion.id == str(version_id), WorkflowVersion.workflow_id == str(workflow_id))
            .first()
        )
        if target is None:
            raise NotFound("Version not found")

        new_version = _claim_next_version(db, workspace_id, workflow_id, settings.version_cas_max_retries)
        workflow = _get_workflow_row(db, workspace_id, workflow_id)
        _snapshot(
            db,
            workflow,
            new_version,
            changed_by=restored_by,
            change_description=f"Before restoring version {target.version}",
            now=now,
        )

        workflow.name = target.name
        workflow.description = target.description
        workflow.trigger_type = target.trigger_type
        workflow.trigger_config = target.trigger_config
        workflow.steps = list(target.steps or [])
        workflow.updated_at = now

        db.commit()

        logger.info(
            "Workflow version restored",
            extra={
                "workflow_id": workflow.id,
                "restored_from_version": target.version,
                "new_version": new_version,
            },
        )
        return {
            "workflow": serialize_workflow(workflow),
            "restored_from_version": int(target.version),
            "new_version": new_version,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_workflow(
    workspace_id: str,
    workflow_id: str,
    *,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    settings = settings or load_settings()

    db = SessionLocal()
    try:
        workflow = _get_workflow_row(db, workspace_id, workflow_id)
        data = serialize_workflow(workflow)

        agent_ids = {s.get("agent_id") for s in data["steps"] if s.get("agent_id")}
        agents = {}
        if agent_ids:
            agents = {
                a.id: {"id": a.id, "name": a.name, "type": a.agent_type, "status": a.status}
                for a in db.query(Agent)
                .filter(Agent.id.in_(agent_ids), Agent.workspace_id == str(workspace_id))
                .all()
            }
        data["steps"] = [dict(step, agent=agents.get(step.get("agent_id"))) for step in data["steps"]]

        recent = (
            db.query(WorkflowExecution)
            .filter(WorkflowExecution.workflow_id == workflow.id)
            .order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.id.asc())
            .limit(int(settings.workflow_recent_executions))
            .all()
        )
        data["recent_executions"] = [execution_summary(e) for e in recent]
        return data
    finally:
        db.close()


def list_workflows(
    workspace_id: str,
    *,
    status: Optional[str] = None,
    team_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        q = db.query(Workflow).filter(Workflow.workspace_id == str(workspace_id))
        if status is not None:
            q = q.filter(Workflow.status == status)
        if team_id is not None:
            q = q.filter(Workflow.team_id == team_id)
        rows = q.order_by(Workflow.updated_at.desc(), Workflow.id.asc()).all()
        return [serialize_workflow(w) for w in rows]
    finally:
        db.close()


def delete_workflow(workspace_id: str, workflow_id: str) -> bool:
    db = SessionLocal()
    try:
        workflow = _get_workflow_row(db, workspace_id, workflow_id)

        # SQLite does not enforce ON DELETE CASCADE without a pragma.
        db.query(WorkflowExecution).filter(WorkflowExecution.workflow_id == workflow.id).delete(
            synchronize_session=False
        )
        db.query(WorkflowVersion).filter(WorkflowVersion.workflow_id == workflow.id).delete(
            synchronize_session=False
        )
        db.delete(workflow)
        db.commit()

        logger.info("Workflow deleted", extra={"workflow_id": str(workflow_id)})
        return True
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
