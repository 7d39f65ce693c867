from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from orchestration.database import SessionLocal
from orchestration.models.pending_action import PendingAction
from orchestration.models.shared_memory import SharedMemoryEntry
from orchestration.models.workflow import Workflow, WorkflowVersion
from orchestration.models.workflow_execution import WorkflowExecution


def _workflow(db) -> Workflow:
    workflow = Workflow(workspace_id="ws-1", name="CK Workflow", steps=[], status="active")
    db.add(workflow)
    db.flush()
    return workflow


def test_check_constraint_blocks_unknown_workflow_status():
    db = SessionLocal()
    try:
        db.add(Workflow(workspace_id="ws-1", name="CK", steps=[], status="running"))

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_check_constraint_blocks_terminal_execution_without_completed_at():
    db = SessionLocal()
    try:
        workflow = _workflow(db)

        db.add(
            WorkflowExecution(
                workspace_id="ws-1",
                workflow_id=workflow.id,
                status="completed",  # should fail ck_agent_workflow_executions_completed_at_consistent
                steps=[],
                context={},
                step_results={},
                completed_at=None,
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_check_constraint_blocks_running_execution_with_completed_at():
    db = SessionLocal()
    try:
        workflow = _workflow(db)

        db.add(
            WorkflowExecution(
                workspace_id="ws-1",
                workflow_id=workflow.id,
                status="running",
                steps=[],
                context={},
                step_results={},
                completed_at=datetime.now(timezone.utc),
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_unique_constraint_blocks_duplicate_version_number():
    db = SessionLocal()
    try:
        workflow = _workflow(db)
        for _ in range(2):
            db.add(
                WorkflowVersion(
                    workspace_id="ws-1",
                    workflow_id=workflow.id,
                    version=1,
                    name=workflow.name,
                    trigger_type="manual",
                    steps=[],
                )
            )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_check_constraint_blocks_importance_out_of_range():
    db = SessionLocal()
    try:
        db.add(
            SharedMemoryEntry(
                workspace_id="ws-1",
                scope_key=":",
                memory_tier="long_term",
                category="knowledge",
                key="k",
                meta={},
                importance=101,
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_check_constraint_blocks_unknown_risk_level():
    db = SessionLocal()
    try:
        db.add(
            PendingAction(
                workspace_id="ws-1",
                action_type="send_email",
                action_data={},
                description="d",
                risk_level="extreme",
                risk_reasons=[],
            )
        )

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()
