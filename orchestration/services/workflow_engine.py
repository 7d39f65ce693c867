"""Workflow execution.

An execution is created ``running`` by :func:`execute_workflow`, which also
enqueues ``WORKFLOW_EXECUTION_STARTED``; the outbox worker then calls
:func:`run_execution`, which drives steps one at a time. Each step boundary
is persisted with a conditional UPDATE (still ``running``, still on the step
that was run, no approval outstanding), so neither a cancellation recorded
between steps nor the progress of a second runner on a redelivered event
is ever overwritten. The losing runner stops.

A step whose action needs review parks the execution: a pending action is
queued and ``awaiting_action_id`` is set in the same transaction. The
worker is released; :func:`resume_execution` picks the run up again once
the approval is resolved.

Known limitation: cancelling does not abort an agent call that is already
in flight, and a step timeout only bounds how long the engine waits.
"""

import copy
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orchestration.agents.registry import AgentRegistry, AgentResult, default_registry, invoke_agent
from orchestration.core.errors import Conflict, InvalidRequest, NotFound
from orchestration.core.settings import Settings, load_settings
from orchestration.database import SessionLocal, as_utc, utcnow
from orchestration.models.event_outbox import EventOutbox
from orchestration.models.pending_action import PendingAction
from orchestration.models.workflow import Workflow
from orchestration.models.workflow_execution import WorkflowExecution
from orchestration.schemas.payloads import validate_action_data, validate_json_object
from orchestration.services import autonomy_service, memory_service

logger = logging.getLogger(__name__)

WORKFLOW_EXECUTION_STARTED = "WORKFLOW_EXECUTION_STARTED"

Sleep = Callable[[float], None]

_MISSING = object()
_TEMPLATE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


# ---------------------------------------------------------------------------
# serialization
# ---------------------------------------------------------------------------


def execution_summary(execution: WorkflowExecution) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "status": execution.status,
        "current_step_index": int(execution.current_step_index or 0),
        "current_step_id": execution.current_step_id,
        "completed_steps": int(execution.completed_steps or 0),
        "total_steps": int(execution.total_steps or 0),
        "duration_ms": execution.duration_ms,
        "started_at": as_utc(execution.started_at),
        "completed_at": as_utc(execution.completed_at),
        "error": execution.error,
    }


def execution_detail(execution: WorkflowExecution) -> Dict[str, Any]:
    data = execution_summary(execution)
    data.update(
        {
            "trigger_type": execution.trigger_type,
            "trigger_data": execution.trigger_data,
            "triggered_by": execution.triggered_by,
            "awaiting_action_id": execution.awaiting_action_id,
            "context": execution.context or {},
            "step_results": execution.step_results or {},
        }
    )
    return data


# ---------------------------------------------------------------------------
# context lookups, conditions, templating
# ---------------------------------------------------------------------------


def lookup(context: Any, path: str) -> Any:
    """Dot-path lookup (``trigger.customer.email``, ``steps.a.output.0``)."""
    current = context
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            current = current[idx] if idx < len(current) else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def condition_met(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    actual = lookup(context, condition["field"])
    expected = condition.get("value")
    operator = condition["operator"]

    if operator == "exists":
        return actual is not _MISSING and actual is not None
    if actual is _MISSING:
        actual = None

    if operator == "equals":
        return _same(actual, expected)
    if operator == "not_equals":
        return not _same(actual, expected)
    if operator == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, list):
            return any(_same(item, expected) for item in actual)
        return False
    if operator == "greater_than":
        return _is_number(actual) and _is_number(expected) and actual > expected
    if operator == "less_than":
        return _is_number(actual) and _is_number(expected) and actual < expected
    return False


def conditions_met(conditions: Optional[List[Dict[str, Any]]], context: Dict[str, Any]) -> bool:
    return all(condition_met(c, context) for c in conditions or ())


def resolve_templates(value: Any, context: Dict[str, Any]) -> Any:
    """Replace ``{{ path }}`` references with context values.

    A string that is exactly one reference takes the referenced value as-is;
    references embedded in longer strings are interpolated as text. Missing
    paths resolve to None (or an empty string when embedded).
    """
    if isinstance(value, dict):
        return {k: resolve_templates(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_templates(v, context) for v in value]
    if not isinstance(value, str):
        return value

    whole = _TEMPLATE.fullmatch(value.strip())
    if whole:
        found = lookup(context, whole.group(1))
        return None if found is _MISSING else found

    def _sub(match):
        found = lookup(context, match.group(1))
        if found is _MISSING or found is None:
            return ""
        if isinstance(found, (dict, list)):
            return json.dumps(found, sort_keys=True)
        return str(found)

    return _TEMPLATE.sub(_sub, value)


# ---------------------------------------------------------------------------
# trigger
# ---------------------------------------------------------------------------


def _memory_key(execution_id: str) -> str:
    return f"workflow_execution_{execution_id}"


def _store_execution_memory(
    db: Session,
    *,
    workspace_id: str,
    team_id: Optional[str],
    execution_id: str,
    value: Dict[str, Any],
    settings: Settings,
    now: datetime,
) -> None:
    memory_service.store(
        workspace_id,
        team_id=team_id,
        memory_tier="short_term",
        category="context",
        key=_memory_key(execution_id),
        value=value,
        metadata={"source": f"workflow_execution:{execution_id}"},
        importance=80,
        expires_at=memory_service.default_expiry("short_term", settings, now),
        now=now,
        db=db,
    )


def execute_workflow(
    workspace_id: str,
    workflow_id: str,
    trigger_payload: Optional[Dict[str, Any]] = None,
    *,
    triggered_by: Optional[str] = None,
    trigger_type: Optional[str] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a running execution and hand it to the outbox worker. Returns its id."""
    settings = settings or load_settings()
    now = now or utcnow()
    payload = validate_json_object(trigger_payload or {}, what="trigger payload")

    db = SessionLocal()
    try:
        workflow = (
            db.query(Workflow)
            .filter(Workflow.id == str(workflow_id), Workflow.workspace_id == str(workspace_id))
            .first()
        )
        if workflow is None:
            raise NotFound("Workflow not found")
        if workflow.status != "active":
            raise Conflict(f"Workflow is not active (status: {workflow.status})")

        steps = copy.deepcopy(list(workflow.steps or []))
        if not steps:
            raise InvalidRequest("Workflow has no steps")

        execution = WorkflowExecution(
            workspace_id=str(workspace_id),
            workflow_id=workflow.id,
            status="running",
            trigger_type=trigger_type or workflow.trigger_type,
            trigger_data=payload,
            triggered_by=triggered_by,
            steps=steps,
            context={"trigger": payload, "steps": {}},
            step_results={},
            current_step_index=0,
            current_step_id=steps[0]["id"],
            completed_steps=0,
            total_steps=len(steps),
            started_at=now,
        )
        db.add(execution)
        db.flush()

        db.execute(
            update(Workflow)
            .where(Workflow.id == workflow.id)
            .values(total_executions=Workflow.total_executions + 1, last_executed_at=now)
            .execution_options(synchronize_session=False)
        )

        db.add(
            EventOutbox(
                workspace_id=str(workspace_id),
                event_type=WORKFLOW_EXECUTION_STARTED,
                idempotency_key=execution.id,
                payload={"execution_id": execution.id},
                created_at=now,
                available_at=now,
            )
        )

        _store_execution_memory(
            db,
            workspace_id=str(workspace_id),
            team_id=workflow.team_id,
            execution_id=execution.id,
            value={
                "workflow_id": workflow.id,
                "workflow_name": workflow.name,
                "status": "running",
                "trigger": payload,
            },
            settings=settings,
            now=now,
        )

        db.commit()

        logger.info(
            "Workflow execution started",
            extra={"execution_id": execution.id, "workflow_id": workflow.id, "total_steps": len(steps)},
        )
        return execution.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# running
# ---------------------------------------------------------------------------


@dataclass
class _ExecutionState:
    id: str
    workspace_id: str
    workflow_id: str
    team_id: Optional[str]
    status: str
    steps: List[Dict[str, Any]]
    context: Dict[str, Any]
    step_results: Dict[str, Any]
    current_step_id: Optional[str]
    completed_steps: int
    awaiting_action_id: Optional[str]
    started_at: datetime

    def step(self, step_id: Optional[str]) -> Optional[Dict[str, Any]]:
        for s in self.steps:
            if s["id"] == step_id:
                return s
        return None

    def index_of(self, step_id: str) -> int:
        for i, s in enumerate(self.steps):
            if s["id"] == step_id:
                return i
        raise KeyError(step_id)


@dataclass
class StepOutcome:
    success: bool
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0
    parked_on: Optional[str] = None
    interrupted: bool = False


def _load_state(db: Session, execution_id: str, workspace_id: Optional[str] = None) -> Optional[_ExecutionState]:
    q = db.query(WorkflowExecution).filter(WorkflowExecution.id == str(execution_id))
    if workspace_id is not None:
        q = q.filter(WorkflowExecution.workspace_id == str(workspace_id))
    execution = q.populate_existing().first()
    if execution is None:
        return None

    team_id = db.query(Workflow.team_id).filter(Workflow.id == execution.workflow_id).scalar()

    return _ExecutionState(
        id=execution.id,
        workspace_id=execution.workspace_id,
        workflow_id=execution.workflow_id,
        team_id=team_id,
        status=execution.status,
        steps=list(execution.steps or []),
        context=copy.deepcopy(execution.context or {"trigger": {}, "steps": {}}),
        step_results=copy.deepcopy(execution.step_results or {}),
        current_step_id=execution.current_step_id,
        completed_steps=int(execution.completed_steps or 0),
        awaiting_action_id=execution.awaiting_action_id,
        started_at=as_utc(execution.started_at),
    )


def _read_state(execution_id: str) -> Optional[_ExecutionState]:
    db = SessionLocal()
    try:
        return _load_state(db, execution_id)
    finally:
        db.close()


def _still_running(execution_id: str) -> bool:
    state = _read_state(execution_id)
    return state is not None and state.status == "running"


def _json_safe(output: Any) -> bool:
    try:
        json.dumps(output)
    except (TypeError, ValueError):
        return False
    return True


def _park(
    state: _ExecutionState,
    step: Dict[str, Any],
    inputs: Dict[str, Any],
    settings: Settings,
) -> Optional[str]:
    """Queue the step's action for review and mark the execution as waiting on it."""
    db = SessionLocal()
    try:
        action = autonomy_service.queue_for_approval(
            state.workspace_id,
            action_type=step["action"],
            action_data=inputs,
            description=f"Workflow step '{step['name']}' requests '{step['action']}'",
            team_id=state.team_id,
            agent_id=step["agent_id"],
            workflow_execution_id=state.id,
            workflow_step_id=step["id"],
            settings=settings,
            db=db,
            check_references=False,
        )
        result = db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == state.id,
                WorkflowExecution.status == "running",
                WorkflowExecution.awaiting_action_id.is_(None),
            )
            .values(awaiting_action_id=action.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return None
        db.commit()

        logger.info(
            "Execution parked for approval",
            extra={"execution_id": state.id, "step_id": step["id"], "action_id": action.id},
        )
        return action.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _invoke(
    state: _ExecutionState,
    step: Dict[str, Any],
    inputs: Dict[str, Any],
    *,
    registry: AgentRegistry,
    settings: Settings,
    risk_level: Optional[str],
    approval_id: Optional[str],
) -> AgentResult:
    context = copy.deepcopy(state.context)
    context["execution_id"] = state.id
    context["step_id"] = step["id"]
    context["shared"] = memory_service.get_shared_context(state.workspace_id, step["agent_id"])

    started = time.monotonic()
    result = invoke_agent(
        workspace_id=state.workspace_id,
        agent_id=step["agent_id"],
        action=step["action"],
        inputs=inputs,
        context=context,
        registry=registry,
        timeout_ms=step.get("timeout_ms"),
        max_workers=settings.step_executor_max_workers,
    )
    if result.success and not _json_safe(result.output):
        result = AgentResult(success=False, error="Agent output is not JSON serializable")
    duration_ms = int((time.monotonic() - started) * 1000)

    details = dict(
        workspace_id=state.workspace_id,
        team_id=state.team_id,
        agent_id=step["agent_id"],
        workflow_execution_id=state.id,
        action_type=step["action"],
        action_data=inputs,
        description=f"Workflow step '{step['name']}'",
        risk_level=risk_level,
        success=result.success,
        error=result.error,
        result=result.output,
        duration_ms=duration_ms,
    )
    if approval_id is None:
        autonomy_service.record_auto_execution(**details)
    else:
        db = SessionLocal()
        try:
            autonomy_service.record_audit(db, was_automatic=False, approval_id=approval_id, **details)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return result


def _run_step(
    state: _ExecutionState,
    step: Dict[str, Any],
    *,
    registry: AgentRegistry,
    settings: Settings,
    sleep: Sleep,
    approved_inputs: Optional[Dict[str, Any]] = None,
    approval_id: Optional[str] = None,
) -> StepOutcome:
    retry = step.get("retry_config") or {}
    max_attempts = int(retry.get("max_attempts") or settings.workflow_default_max_attempts)
    backoff_ms = int(retry.get("backoff_ms") or 0)
    multiplier = float(retry.get("backoff_multiplier") or 1.0)

    cleared = approved_inputs is not None
    risk_level = None
    error = None

    for attempt in range(1, max_attempts + 1):
        if attempt > 1 and not _still_running(state.id):
            return StepOutcome(success=False, error="Execution no longer running", attempts=attempt - 1, interrupted=True)

        inputs = approved_inputs
        if inputs is None:
            if not conditions_met(step.get("conditions"), state.context):
                error = "Condition not met"
            else:
                try:
                    inputs = validate_action_data(
                        step["action"], resolve_templates(step.get("inputs") or {}, state.context)
                    )
                except InvalidRequest as exc:
                    error = str(exc)

        if inputs is not None:
            if not cleared:
                decision = autonomy_service.can_auto_execute(
                    state.workspace_id, state.team_id, step["action"], inputs
                )
                if not decision.can_execute:
                    action_id = _park(state, step, inputs, settings)
                    if action_id is None:
                        return StepOutcome(success=False, error="Execution no longer running", interrupted=True)
                    return StepOutcome(success=False, parked_on=action_id, attempts=attempt)
                cleared = True
                risk_level = decision.classification.risk_level

            result = _invoke(
                state,
                step,
                inputs,
                registry=registry,
                settings=settings,
                risk_level=risk_level,
                approval_id=approval_id,
            )
            if result.success:
                return StepOutcome(success=True, output=result.output, attempts=attempt)
            error = result.error or "Agent action failed"

        logger.info(
            "Step attempt failed",
            extra={
                "execution_id": state.id,
                "step_id": step["id"],
                "attempt": attempt,
                "max_attempts": max_attempts,
                "error": error,
            },
        )
        if attempt < max_attempts and backoff_ms > 0:
            sleep(backoff_ms * (multiplier ** (attempt - 1)) / 1000.0)

    return StepOutcome(success=False, error=error, attempts=max_attempts)


def _next_step_id(state: _ExecutionState, step: Dict[str, Any], success: bool) -> Optional[str]:
    if not success:
        return step.get("on_failure")
    if step.get("on_success"):
        return step["on_success"]
    idx = state.index_of(step["id"])
    if idx + 1 < len(state.steps):
        return state.steps[idx + 1]["id"]
    return None


def _record_outcome(
    state: _ExecutionState,
    step: Dict[str, Any],
    outcome: StepOutcome,
    *,
    settings: Settings,
    now: Optional[datetime] = None,
) -> bool:
    """Persist a finished step and move to the next one (or a terminal state).

    Returns False when the execution stopped running underneath us.
    """
    now = now or utcnow()
    status = "completed" if outcome.success else "failed"

    context = copy.deepcopy(state.context)
    context.setdefault("steps", {})[step["id"]] = {
        "status": status,
        "output": outcome.output,
        "error": outcome.error,
    }
    step_results = dict(state.step_results)
    step_results[step["id"]] = {
        "status": status,
        "output": outcome.output,
        "error": outcome.error,
        "attempts": outcome.attempts,
        "completed_at": now.isoformat(),
    }

    completed = state.completed_steps + (1 if outcome.success else 0)
    next_id = _next_step_id(state, step, outcome.success)

    values: Dict[str, Any] = {
        "context": context,
        "step_results": step_results,
        "completed_steps": completed,
        "awaiting_action_id": None,
    }
    terminal = None
    if next_id is not None:
        values["current_step_id"] = next_id
        values["current_step_index"] = state.index_of(next_id)
    else:
        terminal = "completed" if outcome.success else "failed"
        values["status"] = terminal
        values["completed_at"] = now
        values["duration_ms"] = max(0, int((now - state.started_at).total_seconds() * 1000))
        if terminal == "failed":
            values["error"] = {"message": outcome.error, "step": step["id"]}

    db = SessionLocal()
    try:
        result = db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == state.id,
                WorkflowExecution.status == "running",
                WorkflowExecution.current_step_id == state.current_step_id,
                WorkflowExecution.awaiting_action_id.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False

        if terminal == "completed":
            db.execute(
                update(Workflow)
                .where(Workflow.id == state.workflow_id)
                .values(successful_executions=Workflow.successful_executions + 1)
                .execution_options(synchronize_session=False)
            )
        if terminal is not None:
            _store_execution_memory(
                db,
                workspace_id=state.workspace_id,
                team_id=state.team_id,
                execution_id=state.id,
                value={
                    "workflow_id": state.workflow_id,
                    "status": terminal,
                    "completed_steps": completed,
                    "total_steps": len(state.steps),
                    "error": values.get("error"),
                },
                settings=settings,
                now=now,
            )

        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if terminal is not None:
        logger.info(
            "Workflow execution finished",
            extra={
                "execution_id": state.id,
                "status": terminal,
                "completed_steps": completed,
                "duration_ms": values["duration_ms"],
            },
        )
    return True


def run_execution(
    execution_id: str,
    *,
    registry: Optional[AgentRegistry] = None,
    settings: Optional[Settings] = None,
    sleep: Sleep = time.sleep,
) -> str:
    """Drive an execution until it finishes, is cancelled, or parks on an approval.

    Returns the execution status when it stops advancing.
    """
    registry = registry or default_registry
    settings = settings or load_settings()

    while True:
        state = _read_state(execution_id)
        if state is None:
            raise NotFound("Execution not found")
        if state.status != "running" or state.awaiting_action_id:
            return state.status

        step = state.step(state.current_step_id)
        if step is None:
            _record_missing_step(state, settings)
            continue

        outcome = _run_step(state, step, registry=registry, settings=settings, sleep=sleep)
        if outcome.parked_on or outcome.interrupted:
            continue
        if not _record_outcome(state, step, outcome, settings=settings):
            # Cancelled, or another runner moved the execution on; its writes stand.
            logger.info(
                "Stale step outcome discarded",
                extra={"execution_id": state.id, "step_id": step["id"]},
            )
            current = _read_state(execution_id)
            return current.status if current is not None else state.status


def _record_missing_step(state: _ExecutionState, settings: Settings) -> None:
    missing = {"id": state.current_step_id or "", "name": "unknown"}
    _record_outcome(
        state,
        missing,
        StepOutcome(success=False, error=f"Step not found: {state.current_step_id}"),
        settings=settings,
    )


def resume_execution(
    execution_id: str,
    action_id: str,
    *,
    registry: Optional[AgentRegistry] = None,
    settings: Optional[Settings] = None,
    sleep: Sleep = time.sleep,
) -> str:
    """Continue a run parked on ``action_id`` once that action has been resolved.

    Approved: the blocked step runs with the approved action data and is not
    re-submitted for review. Rejected: the step fails without retries.
    """
    registry = registry or default_registry
    settings = settings or load_settings()

    db = SessionLocal()
    try:
        state = _load_state(db, execution_id)
        if state is None:
            raise NotFound("Execution not found")
        action = db.query(PendingAction).filter(PendingAction.id == str(action_id)).first()
        if action is None:
            raise NotFound("Pending action not found")

        if state.status != "running" or state.awaiting_action_id != action.id:
            logger.info(
                "Resume ignored",
                extra={"execution_id": state.id, "action_id": action.id, "status": state.status},
            )
            return state.status
        if action.status not in ("approved", "rejected"):
            return state.status

        approved = action.status == "approved"
        approved_inputs = dict(action.action_data or {})
        review_notes = action.review_notes

        # Claim the resume so a redelivered event cannot run the step twice.
        claimed = db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == state.id,
                WorkflowExecution.status == "running",
                WorkflowExecution.awaiting_action_id == action.id,
            )
            .values(awaiting_action_id=None)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            return state.status
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    step = state.step(state.current_step_id)
    if step is None:
        _record_missing_step(state, settings)
        return run_execution(execution_id, registry=registry, settings=settings, sleep=sleep)

    logger.info(
        "Resuming execution",
        extra={"execution_id": state.id, "step_id": step["id"], "action_id": str(action_id), "approved": approved},
    )

    if approved:
        outcome = _run_step(
            state,
            step,
            registry=registry,
            settings=settings,
            sleep=sleep,
            approved_inputs=approved_inputs,
            approval_id=str(action_id),
        )
    else:
        outcome = StepOutcome(
            success=False,
            error=f"Action rejected: {review_notes or 'No reason provided'}",
            attempts=0,
        )

    if not outcome.interrupted:
        _record_outcome(state, step, outcome, settings=settings)
    return run_execution(execution_id, registry=registry, settings=settings, sleep=sleep)


# ---------------------------------------------------------------------------
# inspection / cancellation
# ---------------------------------------------------------------------------


def cancel_execution(
    workspace_id: str,
    execution_id: str,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Stop an execution at the next step boundary. An in-flight agent call is not aborted."""
    settings = settings or load_settings()
    now = now or utcnow()

    db = SessionLocal()
    try:
        state = _load_state(db, execution_id, workspace_id)
        if state is None:
            raise NotFound("Execution not found")

        result = db.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == state.id,
                WorkflowExecution.status.in_(("pending", "running")),
            )
            .values(
                status="cancelled",
                cancel_requested=True,
                completed_at=now,
                duration_ms=max(0, int((now - state.started_at).total_seconds() * 1000)),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            current = _load_state(db, execution_id, workspace_id)
            raise Conflict(f"Execution already {current.status if current else 'gone'}")

        _store_execution_memory(
            db,
            workspace_id=state.workspace_id,
            team_id=state.team_id,
            execution_id=state.id,
            value={
                "workflow_id": state.workflow_id,
                "status": "cancelled",
                "completed_steps": state.completed_steps,
                "total_steps": len(state.steps),
            },
            settings=settings,
            now=now,
        )
        db.commit()

        logger.info("Workflow execution cancelled", extra={"execution_id": state.id})

        execution = db.query(WorkflowExecution).filter(WorkflowExecution.id == state.id).populate_existing().first()
        return execution_detail(execution)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_execution(workspace_id: str, execution_id: str) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        execution = (
            db.query(WorkflowExecution)
            .filter(
                WorkflowExecution.id == str(execution_id),
                WorkflowExecution.workspace_id == str(workspace_id),
            )
            .first()
        )
        if execution is None:
            raise NotFound("Execution not found")
        return execution_detail(execution)
    finally:
        db.close()


def list_executions(workspace_id: str, workflow_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        exists = (
            db.query(Workflow.id)
            .filter(Workflow.id == str(workflow_id), Workflow.workspace_id == str(workspace_id))
            .first()
        )
        if exists is None:
            raise NotFound("Workflow not found")

        rows = (
            db.query(WorkflowExecution)
            .filter(WorkflowExecution.workflow_id == str(workflow_id))
            .order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.id.asc())
            .limit(int(limit))
            .all()
        )
        return [execution_summary(e) for e in rows]
    finally:
        db.close()
