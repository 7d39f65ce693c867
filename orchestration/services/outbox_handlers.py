import logging
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from orchestration.agents.registry import AgentRegistry, default_registry
from orchestration.core.settings import Settings, load_settings
from orchestration.models.event_outbox import EventOutbox
from orchestration.models.pending_action import PendingAction
from orchestration.services import autonomy_service, workflow_engine

logger = logging.getLogger(__name__)


def _payload_value(row: EventOutbox, name: str) -> Optional[str]:
    payload: Any = row.payload or {}
    if not isinstance(payload, dict):
        return None
    v = payload.get(name)
    return None if v is None else str(v)


def build_handlers(
    registry: Optional[AgentRegistry] = None,
    settings: Optional[Settings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Callable[[EventOutbox, Session], None]]:
    registry = registry or default_registry
    settings = settings or load_settings()

    def handle_execution_started(row: EventOutbox, db: Session) -> None:
        execution_id = _payload_value(row, "execution_id")
        if not execution_id:
            logger.info(
                "WORKFLOW_EXECUTION_STARTED missing execution_id; skipping",
                extra={"event_outbox_id": row.id},
            )
            return

        workflow_engine.run_execution(execution_id, registry=registry, settings=settings, sleep=sleep)

    def handle_action_resolved(row: EventOutbox, db: Session) -> None:
        action_id = _payload_value(row, "pending_action_id")
        if not action_id:
            logger.info(
                "PENDING_ACTION_RESOLVED missing pending_action_id; skipping",
                extra={"event_outbox_id": row.id},
            )
            return

        action = db.query(PendingAction).filter(PendingAction.id == action_id).first()
        if action is None:
            logger.info(
                "PENDING_ACTION_RESOLVED for unknown action; skipping",
                extra={"event_outbox_id": row.id, "action_id": action_id},
            )
            return

        if action.workflow_execution_id:
            workflow_engine.resume_execution(
                action.workflow_execution_id,
                action.id,
                registry=registry,
                settings=settings,
                sleep=sleep,
            )
            return

        autonomy_service.execute_approved_action(action.id, registry=registry, settings=settings)

    return {
        workflow_engine.WORKFLOW_EXECUTION_STARTED: handle_execution_started,
        autonomy_service.PENDING_ACTION_RESOLVED: handle_action_resolved,
    }
