import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.orm import Session

from orchestration.agents.registry import AgentRegistry, default_registry, invoke_agent
from orchestration.core.errors import ApprovalExpired, Conflict, InvalidRequest, NotFound
from orchestration.core.settings import Settings, load_settings
from orchestration.database import SessionLocal, as_utc, utcnow
from orchestration.models.directory import Agent, AgentTeam, User
from orchestration.models.event_outbox import EventOutbox
from orchestration.models.pending_action import (
    APPROVAL_STATUSES,
    RISK_LEVELS,
    ActionAuditEntry,
    PendingAction,
)
from orchestration.models.workflow_execution import WorkflowExecution
from orchestration.schemas.payloads import validate_action_data, validate_json_object

logger = logging.getLogger(__name__)

PENDING_ACTION_RESOLVED = "PENDING_ACTION_RESOLVED"

# Substring patterns per risk level. Critical is checked first.
DEFAULT_RISK_RULES: Dict[str, Tuple[str, ...]] = {
    "low": (
        "read_data",
        "list_items",
        "get_status",
        "log_activity",
        "log_event",
        "update_internal_note",
        "fetch_analytics",
        "check_availability",
        "retrieve_memory",
        "store_context",
    ),
    "medium": (
        "create_task",
        "update_task",
        "create_note",
        "update_crm_field",
        "send_internal_notification",
        "schedule_reminder",
        "tag_contact",
        "update_lead_status",
        "create_draft",
    ),
    "high": (
        "send_email",
        "send_message",
        "schedule_meeting",
        "update_calendar",
        "modify_contact",
        "update_deal_value",
        "change_pipeline_stage",
        "external_api_call",
        "publish_content",
    ),
    "critical": (
        "financial_transaction",
        "delete_data",
        "bulk_delete",
        "send_mass_email",
        "update_payment",
        "modify_subscription",
        "export_data",
        "customer_communication",
        "contract_modification",
    ),
}

# Highest risk level each autonomy level may execute without review.
AUTONOMY_CEILINGS: Dict[str, Optional[str]] = {
    "supervised": None,
    "semi_autonomous": "low",
    "autonomous": "high",
}


def _rank(risk_level: str) -> int:
    return RISK_LEVELS.index(risk_level)


@dataclass(frozen=True)
class AutonomyConfig:
    autonomy_level: str = "supervised"
    approval_required: Tuple[str, ...] = ()
    risk_rules: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_RISK_RULES))

    @classmethod
    def from_team_config(cls, raw: Optional[Mapping[str, Any]]) -> "AutonomyConfig":
        raw = raw or {}
        rules = dict(DEFAULT_RISK_RULES)
        for level, patterns in (raw.get("risk_rules") or {}).items():
            if level in rules and isinstance(patterns, (list, tuple)):
                rules[level] = tuple(str(p) for p in patterns)

        return cls(
            autonomy_level=str(raw.get("autonomy_level") or "supervised"),
            approval_required=tuple(str(a) for a in (raw.get("approval_required") or ())),
            risk_rules=rules,
        )


@dataclass(frozen=True)
class RiskClassification:
    risk_level: str
    reasons: Tuple[str, ...]
    requires_approval: bool = False


@dataclass(frozen=True)
class AutoExecuteDecision:
    can_execute: bool
    classification: RiskClassification


def classify(
    action_type: str,
    action_data: Optional[Mapping[str, Any]] = None,
    autonomy_config: Optional[AutonomyConfig] = None,
) -> RiskClassification:
    """Deterministic risk level for an action. No I/O, no clock."""
    rules = (autonomy_config or AutonomyConfig()).risk_rules
    reasons: List[str] = []

    def _matches(level: str) -> bool:
        return any(pattern in action_type for pattern in rules.get(level, ()))

    if _matches("critical"):
        risk = "critical"
        reasons.append(f"Action type '{action_type}' is classified as critical")
    elif _matches("high"):
        risk = "high"
        reasons.append(f"Action type '{action_type}' involves external communication or data modification")
    elif _matches("medium"):
        risk = "medium"
        reasons.append(f"Action type '{action_type}' modifies internal data")
    elif _matches("low"):
        risk = "low"
        reasons.append(f"Action type '{action_type}' is read-only or internal")
    else:
        risk = "medium"
        reasons.append(f"Unknown action type '{action_type}' defaulting to medium risk")

    data = action_data or {}

    count = data.get("count")
    if isinstance(count, (int, float)) and not isinstance(count, bool) and count > 10:
        if risk == "low":
            risk = "medium"
        elif risk == "medium":
            risk = "high"
        reasons.append(f"Bulk operation affecting {count} items")

    if data.get("external_recipient") or data.get("to_external"):
        if risk != "critical":
            risk = "high"
        reasons.append("Action involves external recipient")

    amount = data.get("amount") or data.get("value")
    if isinstance(amount, (int, float)) and not isinstance(amount, bool) and amount > 0:
        risk = "critical"
        reasons.append(f"Action involves monetary value: {amount}")

    if data.get("delete") or data.get("remove") or data.get("destroy"):
        if risk != "critical":
            risk = "high"
        reasons.append("Action involves deletion")

    return RiskClassification(risk_level=risk, reasons=tuple(reasons))


def evaluate(
    action_type: str,
    action_data: Optional[Mapping[str, Any]],
    autonomy_config: Optional[AutonomyConfig],
    *,
    has_team: bool = True,
) -> RiskClassification:
    """Classify and decide whether review is needed. Pure.

    ``autonomy_config`` is None when the team could not be found.
    """
    base = classify(action_type, action_data, autonomy_config)
    reasons = list(base.reasons)

    if not has_team:
        requires = base.risk_level != "low"
    elif autonomy_config is None:
        requires = True
        reasons.append("Team not found - requiring approval")
    elif action_type in autonomy_config.approval_required:
        requires = True
        reasons.append(f"Action '{action_type}' is explicitly configured to require approval")
    elif autonomy_config.autonomy_level not in AUTONOMY_CEILINGS:
        requires = True
        reasons.append("Unknown autonomy level - requiring approval")
    else:
        ceiling = AUTONOMY_CEILINGS[autonomy_config.autonomy_level]
        requires = ceiling is None or _rank(base.risk_level) > _rank(ceiling)
        if requires:
            reasons.append(
                f"Autonomy level '{autonomy_config.autonomy_level}': {base.risk_level} risk requires approval"
            )

    return RiskClassification(risk_level=base.risk_level, reasons=tuple(reasons), requires_approval=requires)


def load_autonomy_config(db: Session, workspace_id: str, team_id: str) -> Optional[AutonomyConfig]:
    team = (
        db.query(AgentTeam)
        .filter(AgentTeam.id == str(team_id), AgentTeam.workspace_id == str(workspace_id))
        .first()
    )
    if team is None:
        return None
    return AutonomyConfig.from_team_config(team.config)


def can_auto_execute(
    workspace_id: str,
    team_id: Optional[str],
    action_type: str,
    action_data: Optional[Mapping[str, Any]] = None,
    *,
    db: Optional[Session] = None,
) -> AutoExecuteDecision:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        config = load_autonomy_config(db, workspace_id, team_id) if team_id else None
        classification = evaluate(action_type, action_data, config, has_team=bool(team_id))
        return AutoExecuteDecision(
            can_execute=not classification.requires_approval,
            classification=classification,
        )
    finally:
        if owns_db:
            db.close()


# ---------------------------------------------------------------------------
# audit log
# ---------------------------------------------------------------------------


def record_audit(
    db: Session,
    *,
    workspace_id: str,
    action_type: str,
    was_automatic: bool,
    success: bool,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    workflow_execution_id: Optional[str] = None,
    action_data: Optional[dict] = None,
    description: Optional[str] = None,
    approval_id: Optional[str] = None,
    risk_level: Optional[str] = None,
    error: Optional[str] = None,
    result: Any = None,
    duration_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Append an audit row. Caller owns the transaction."""
    entry = ActionAuditEntry(
        workspace_id=str(workspace_id),
        team_id=team_id,
        agent_id=agent_id,
        workflow_execution_id=workflow_execution_id,
        action_type=action_type,
        action_data=action_data,
        description=description,
        was_automatic=bool(was_automatic),
        approval_id=approval_id,
        risk_level=risk_level,
        success=bool(success),
        error=error,
        result=result,
        duration_ms=duration_ms,
        executed_at=now or utcnow(),
    )
    db.add(entry)
    db.flush()
    return entry.id


def record_auto_execution(*, db: Optional[Session] = None, **details) -> str:
    """Audit an action that bypassed review."""
    details.pop("was_automatic", None)
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        entry_id = record_audit(db, was_automatic=True, **details)
        if owns_db:
            db.commit()
        return entry_id
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def get_audit_log(
    workspace_id: str,
    *,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    action_type: Optional[str] = None,
    was_automatic: Optional[bool] = None,
    success: Optional[bool] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
    db: Optional[Session] = None,
) -> List[dict]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = db.query(ActionAuditEntry).filter(ActionAuditEntry.workspace_id == str(workspace_id))
        if team_id is not None:
            q = q.filter(ActionAuditEntry.team_id == team_id)
        if agent_id is not None:
            q = q.filter(ActionAuditEntry.agent_id == agent_id)
        if action_type is not None:
            q = q.filter(ActionAuditEntry.action_type == action_type)
        if was_automatic is not None:
            q = q.filter(ActionAuditEntry.was_automatic.is_(bool(was_automatic)))
        if success is not None:
            q = q.filter(ActionAuditEntry.success.is_(bool(success)))
        if start is not None:
            q = q.filter(ActionAuditEntry.executed_at >= start)
        if end is not None:
            q = q.filter(ActionAuditEntry.executed_at <= end)

        rows = (
            q.order_by(ActionAuditEntry.executed_at.desc(), ActionAuditEntry.id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
        return [
            {
                "id": r.id,
                "team_id": r.team_id,
                "agent_id": r.agent_id,
                "workflow_execution_id": r.workflow_execution_id,
                "action_type": r.action_type,
                "action_data": r.action_data,
                "description": r.description,
                "was_automatic": r.was_automatic,
                "approval_id": r.approval_id,
                "risk_level": r.risk_level,
                "success": r.success,
                "error": r.error,
                "result": r.result,
                "duration_ms": r.duration_ms,
                "executed_at": as_utc(r.executed_at),
            }
            for r in rows
        ]
    finally:
        if owns_db:
            db.close()


# ---------------------------------------------------------------------------
# approval queue
# ---------------------------------------------------------------------------


def _expiry_hours(expires_in_hours: Optional[float], settings: Settings) -> float:
    if expires_in_hours is None:
        hours = float(settings.approval_default_expiry_hours)
    else:
        hours = float(expires_in_hours)
        if hours <= 0:
            raise InvalidRequest("expires_in_hours must be positive")
    return min(hours, float(settings.approval_max_expiry_hours))


def queue_for_approval(
    workspace_id: str,
    *,
    action_type: str,
    action_data: Optional[dict],
    description: str,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    workflow_execution_id: Optional[str] = None,
    workflow_step_id: Optional[str] = None,
    expires_in_hours: Optional[float] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
    check_references: bool = True,
) -> PendingAction:
    """Create a pending action. If db is provided, the caller commits.

    Team and execution ids must belong to the workspace unless
    ``check_references`` is off (the engine parking its own execution).
    """
    if not action_type or not str(action_type).strip():
        raise InvalidRequest("action_type is required")
    if not description or not str(description).strip():
        raise InvalidRequest("description is required")

    settings = settings or load_settings()
    now = now or utcnow()
    payload = validate_action_data(action_type, action_data or {})
    hours = _expiry_hours(expires_in_hours, settings)

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        if check_references and team_id is not None and load_autonomy_config(db, workspace_id, team_id) is None:
            raise NotFound("Team not found")
        if check_references and workflow_execution_id is not None:
            execution = (
                db.query(WorkflowExecution.id)
                .filter(
                    WorkflowExecution.id == str(workflow_execution_id),
                    WorkflowExecution.workspace_id == str(workspace_id),
                )
                .first()
            )
            if execution is None:
                raise NotFound("Execution not found")

        decision = can_auto_execute(workspace_id, team_id, action_type, payload, db=db)

        action = PendingAction(
            workspace_id=str(workspace_id),
            team_id=team_id,
            agent_id=agent_id,
            workflow_execution_id=workflow_execution_id,
            workflow_step_id=workflow_step_id,
            action_type=action_type,
            action_data=payload,
            description=description,
            risk_level=decision.classification.risk_level,
            risk_reasons=list(decision.classification.reasons),
            status="pending",
            expires_at=now + timedelta(hours=hours),
            created_at=now,
        )
        db.add(action)
        db.flush()

        if owns_db:
            db.commit()

        logger.info(
            "Action queued for approval",
            extra={
                "action_id": action.id,
                "action_type": action_type,
                "risk_level": action.risk_level,
                "team_id": team_id,
                "workflow_execution_id": workflow_execution_id,
            },
        )
        return action
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def effective_status(action: PendingAction, now: datetime) -> str:
    """Lazy expiry: an overdue pending row reads as expired."""
    expires_at = as_utc(action.expires_at)
    if action.status == "pending" and expires_at is not None and expires_at <= now:
        return "expired"
    return action.status


def _not_expired(now: datetime):
    return or_(PendingAction.expires_at.is_(None), PendingAction.expires_at > now)


def _status_clause(status: str, now: datetime):
    if status == "pending":
        return and_(PendingAction.status == "pending", _not_expired(now))
    if status == "expired":
        return or_(
            PendingAction.status == "expired",
            and_(PendingAction.status == "pending", PendingAction.expires_at <= now),
        )
    return PendingAction.status == status


def _display_names(db: Session, actions: Iterable[PendingAction]) -> Tuple[dict, dict, dict]:
    actions = list(actions)
    agent_ids = {a.agent_id for a in actions if a.agent_id}
    team_ids = {a.team_id for a in actions if a.team_id}
    user_ids = {a.reviewer_id for a in actions if a.reviewer_id}

    agents = {}
    if agent_ids:
        agents = {a.id: a.name for a in db.query(Agent).filter(Agent.id.in_(agent_ids)).all()}
    teams = {}
    if team_ids:
        teams = {t.id: t.name for t in db.query(AgentTeam).filter(AgentTeam.id.in_(team_ids)).all()}
    users = {}
    if user_ids:
        users = {u.id: u.display_name for u in db.query(User).filter(User.id.in_(user_ids)).all()}
    return agents, teams, users


def _serialize_action(action: PendingAction, now: datetime, names: Tuple[dict, dict, dict]) -> dict:
    agents, teams, users = names
    return {
        "id": action.id,
        "workspace_id": action.workspace_id,
        "team_id": action.team_id,
        "agent_id": action.agent_id,
        "workflow_execution_id": action.workflow_execution_id,
        "workflow_step_id": action.workflow_step_id,
        "action_type": action.action_type,
        "action_data": action.action_data or {},
        "description": action.description,
        "risk_level": action.risk_level,
        "risk_reasons": list(action.risk_reasons or []),
        "status": effective_status(action, now),
        "reviewer_id": action.reviewer_id,
        "reviewed_at": as_utc(action.reviewed_at),
        "review_notes": action.review_notes,
        "expires_at": as_utc(action.expires_at),
        "created_at": as_utc(action.created_at),
        "agent_name": agents.get(action.agent_id),
        "team_name": teams.get(action.team_id),
        "reviewer_name": users.get(action.reviewer_id),
    }


def get_pending_actions(
    workspace_id: str,
    *,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    status: Optional[str] = None,
    risk_level: Optional[str] = None,
    action_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> List[dict]:
    if status is not None and status not in APPROVAL_STATUSES:
        raise InvalidRequest(f"Unknown status: {status}")
    if risk_level is not None and risk_level not in RISK_LEVELS:
        raise InvalidRequest(f"Unknown risk level: {risk_level}")

    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = db.query(PendingAction).filter(PendingAction.workspace_id == str(workspace_id))
        if team_id is not None:
            q = q.filter(PendingAction.team_id == team_id)
        if agent_id is not None:
            q = q.filter(PendingAction.agent_id == agent_id)
        if status is not None:
            q = q.filter(_status_clause(status, now))
        if risk_level is not None:
            q = q.filter(PendingAction.risk_level == risk_level)
        if action_type is not None:
            q = q.filter(PendingAction.action_type == action_type)

        rows = (
            q.order_by(PendingAction.created_at.desc(), PendingAction.id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
        names = _display_names(db, rows)
        return [_serialize_action(r, now, names) for r in rows]
    finally:
        if owns_db:
            db.close()


def get_pending_count(
    workspace_id: str,
    team_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> int:
    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = (
            db.query(func.count(PendingAction.id))
            .filter(PendingAction.workspace_id == str(workspace_id))
            .filter(_status_clause("pending", now))
        )
        if team_id is not None:
            q = q.filter(PendingAction.team_id == team_id)
        return int(q.scalar() or 0)
    finally:
        if owns_db:
            db.close()


# ---------------------------------------------------------------------------
# team / department statistics
# ---------------------------------------------------------------------------


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _audit_totals(db: Session, workspace_id: str, team_ids: List[str]) -> Dict[str, dict]:
    rows = (
        db.query(
            ActionAuditEntry.team_id,
            func.count(ActionAuditEntry.id),
            func.sum(case((ActionAuditEntry.was_automatic.is_(True), 1), else_=0)),
            func.sum(case((ActionAuditEntry.success.is_(True), 1), else_=0)),
            func.avg(ActionAuditEntry.duration_ms),
            func.max(ActionAuditEntry.executed_at),
        )
        .filter(
            ActionAuditEntry.workspace_id == str(workspace_id),
            ActionAuditEntry.team_id.in_(team_ids),
        )
        .group_by(ActionAuditEntry.team_id)
        .all()
    )
    return {
        team_id: {
            "total": int(total or 0),
            "automatic": int(automatic or 0),
            "succeeded": int(succeeded or 0),
            "avg_duration_ms": float(avg_duration or 0),
            "last_action_at": as_utc(last_at),
        }
        for team_id, total, automatic, succeeded, avg_duration, last_at in rows
    }


def _action_counts(db: Session, workspace_id: str, team_ids: List[str], *conditions) -> Dict[str, int]:
    rows = (
        db.query(PendingAction.team_id, func.count(PendingAction.id))
        .filter(PendingAction.workspace_id == str(workspace_id), PendingAction.team_id.in_(team_ids))
        .filter(*conditions)
        .group_by(PendingAction.team_id)
        .all()
    )
    return {team_id: int(n) for team_id, n in rows}


def get_team_autonomy_stats(
    workspace_id: str,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> List[dict]:
    """Per-team action volume and approval activity.

    "Today" starts at UTC midnight of ``now``. Awaiting approval follows the
    lazy-expiry rule, so overdue rows are not counted.
    """
    now = now or utcnow()
    today = _start_of_day(now)
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        teams = (
            db.query(AgentTeam)
            .filter(AgentTeam.workspace_id == str(workspace_id))
            .order_by(AgentTeam.name.asc(), AgentTeam.id.asc())
            .all()
        )
        if not teams:
            return []
        team_ids = [t.id for t in teams]

        audit = _audit_totals(db, workspace_id, team_ids)
        awaiting = _action_counts(db, workspace_id, team_ids, _status_clause("pending", now))
        approved_today = _action_counts(
            db, workspace_id, team_ids, PendingAction.status == "approved", PendingAction.reviewed_at >= today
        )
        rejected_today = _action_counts(
            db, workspace_id, team_ids, PendingAction.status == "rejected", PendingAction.reviewed_at >= today
        )

        stats = []
        for team in teams:
            totals = audit.get(team.id, {})
            stats.append(
                {
                    "team_id": team.id,
                    "team_name": team.name,
                    "autonomy_level": AutonomyConfig.from_team_config(team.config).autonomy_level,
                    "total_actions": totals.get("total", 0),
                    "auto_executed": totals.get("automatic", 0),
                    "awaiting_approval": awaiting.get(team.id, 0),
                    "approved_today": approved_today.get(team.id, 0),
                    "rejected_today": rejected_today.get(team.id, 0),
                    "last_action_at": totals.get("last_action_at"),
                }
            )
        return stats
    finally:
        if owns_db:
            db.close()


def get_department_metrics(
    workspace_id: str,
    department: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> List[dict]:
    """Team statistics rolled up per department, ordered by department name."""
    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = db.query(AgentTeam).filter(AgentTeam.workspace_id == str(workspace_id))
        if department is not None:
            q = q.filter(AgentTeam.department == department)
        teams = q.all()
        if not teams:
            return []
        team_ids = [t.id for t in teams]

        audit = _audit_totals(db, workspace_id, team_ids)
        pending = _action_counts(db, workspace_id, team_ids, _status_clause("pending", now))
        rejected = _action_counts(db, workspace_id, team_ids, PendingAction.status == "rejected")

        by_department: Dict[str, List[AgentTeam]] = {}
        for team in teams:
            by_department.setdefault(team.department, []).append(team)

        metrics = []
        for dept in sorted(by_department):
            members = by_department[dept]
            totals = [audit[t.id] for t in members if t.id in audit]
            total = sum(t["total"] for t in totals)
            automatic = sum(t["automatic"] for t in totals)
            succeeded = sum(t["succeeded"] for t in totals)
            # Weighted by each team's action count.
            duration = sum(t["avg_duration_ms"] * t["total"] for t in totals)

            metrics.append(
                {
                    "department": dept,
                    "team_count": len(members),
                    "active_teams": sum(1 for t in members if t.status == "active"),
                    "total_actions": total,
                    "auto_approved_actions": automatic,
                    "manually_approved_actions": total - automatic,
                    "rejected_actions": sum(rejected.get(t.id, 0) for t in members),
                    "pending_approvals": sum(pending.get(t.id, 0) for t in members),
                    "success_rate": (succeeded / total * 100.0) if total else 0.0,
                    "avg_response_time_ms": (duration / total) if total else 0.0,
                }
            )
        return metrics
    finally:
        if owns_db:
            db.close()


def _get_action_row(db: Session, workspace_id: str, action_id: str) -> Optional[PendingAction]:
    return (
        db.query(PendingAction)
        .filter(PendingAction.id == str(action_id), PendingAction.workspace_id == str(workspace_id))
        .populate_existing()
        .first()
    )


def get_pending_action(
    workspace_id: str,
    action_id: str,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> dict:
    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        action = _get_action_row(db, workspace_id, action_id)
        if action is None:
            raise NotFound("Pending action not found")
        return _serialize_action(action, now, _display_names(db, [action]))
    finally:
        if owns_db:
            db.close()


def process_approval(
    workspace_id: str,
    action_id: str,
    approved: bool,
    reviewer_id: str,
    review_notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """Resolve a pending action. The only transition out of ``pending``.

    The status change is a single conditional UPDATE (still pending, not
    expired), so of two concurrent calls exactly one wins; the loser gets
    Conflict (or ApprovalExpired) and nothing is written for it.
    """
    if not reviewer_id:
        raise InvalidRequest("reviewer_id is required")

    now = now or utcnow()
    new_status = "approved" if approved else "rejected"

    db = SessionLocal()
    try:
        result = db.execute(
            update(PendingAction)
            .where(
                PendingAction.id == str(action_id),
                PendingAction.workspace_id == str(workspace_id),
                PendingAction.status == "pending",
                _not_expired(now),
            )
            .values(
                status=new_status,
                reviewer_id=str(reviewer_id),
                reviewed_at=now,
                review_notes=review_notes,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            db.rollback()
            current = _get_action_row(db, workspace_id, action_id)
            if current is None:
                raise NotFound("Pending action not found")
            if effective_status(current, now) == "expired":
                raise ApprovalExpired("Pending action has expired")
            raise Conflict(f"Pending action already {current.status}")

        action = _get_action_row(db, workspace_id, action_id)

        record_audit(
            db,
            workspace_id=action.workspace_id,
            team_id=action.team_id,
            agent_id=action.agent_id,
            workflow_execution_id=action.workflow_execution_id,
            action_type=action.action_type,
            action_data=action.action_data,
            description=action.description,
            was_automatic=False,
            approval_id=action.id,
            risk_level=action.risk_level,
            success=bool(approved),
            error=None if approved else f"Rejected: {review_notes or 'No reason provided'}",
            now=now,
        )

        # Resuming the parked execution / dispatching the action happens out-of-band.
        db.add(
            EventOutbox(
                workspace_id=action.workspace_id,
                event_type=PENDING_ACTION_RESOLVED,
                idempotency_key=action.id,
                payload={"pending_action_id": action.id, "approved": bool(approved)},
                created_at=now,
                available_at=now,
            )
        )

        db.commit()

        logger.info(
            "Approval processed",
            extra={
                "action_id": action.id,
                "approved": bool(approved),
                "reviewer_id": str(reviewer_id),
                "workflow_execution_id": action.workflow_execution_id,
            },
        )

        return {
            "action_id": action.id,
            "status": new_status,
            "reviewer_id": str(reviewer_id),
            "reviewed_at": now,
            "workflow_execution_id": action.workflow_execution_id,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def process_bulk_approval(
    workspace_id: str,
    action_ids: Iterable[str],
    approved: bool,
    reviewer_id: str,
    review_notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict:
    processed = 0
    failed = 0
    for action_id in action_ids:
        try:
            process_approval(workspace_id, action_id, approved, reviewer_id, review_notes, now=now)
            processed += 1
        except (Conflict, NotFound) as exc:
            failed += 1
            logger.info(
                "Bulk approval skipped action",
                extra={"action_id": action_id, "reason": str(exc)},
            )

    logger.info(
        "Bulk approval completed",
        extra={"processed": processed, "failed": failed, "approved": bool(approved)},
    )
    return {"processed": processed, "failed": failed}


def execute_approved_action(
    action_id: str,
    *,
    registry: Optional[AgentRegistry] = None,
    settings: Optional[Settings] = None,
) -> Optional[bool]:
    """Run a standalone approved action on its agent and audit the outcome.

    Returns None when there is nothing to run (not approved, or no agent).
    """
    registry = registry or default_registry
    settings = settings or load_settings()

    db = SessionLocal()
    try:
        action = db.query(PendingAction).filter(PendingAction.id == str(action_id)).first()
        if action is None:
            raise NotFound("Pending action not found")
        if action.status != "approved" or not action.agent_id:
            return None
        snapshot = {
            "workspace_id": action.workspace_id,
            "team_id": action.team_id,
            "agent_id": action.agent_id,
            "action_type": action.action_type,
            "action_data": dict(action.action_data or {}),
            "description": action.description,
            "risk_level": action.risk_level,
        }
    finally:
        db.close()

    started = time.monotonic()
    result = invoke_agent(
        workspace_id=snapshot["workspace_id"],
        agent_id=snapshot["agent_id"],
        action=snapshot["action_type"],
        inputs=snapshot["action_data"],
        context={"approval_id": str(action_id)},
        registry=registry,
        max_workers=settings.step_executor_max_workers,
    )
    duration_ms = int((time.monotonic() - started) * 1000)

    db = SessionLocal()
    try:
        record_audit(
            db,
            workspace_id=snapshot["workspace_id"],
            team_id=snapshot["team_id"],
            agent_id=snapshot["agent_id"],
            action_type=snapshot["action_type"],
            action_data=snapshot["action_data"],
            description=snapshot["description"],
            was_automatic=False,
            approval_id=str(action_id),
            risk_level=snapshot["risk_level"],
            success=result.success,
            error=result.error,
            result=result.output,
            duration_ms=duration_ms,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return result.success
