"""Agent capabilities, dispatched by the agent row's ``agent_type`` tag.

A step timeout bounds how long the caller waits. It does not stop the
underlying call: a timed-out invocation keeps running on its worker thread,
so retrying a non-idempotent action after a timeout can repeat its side
effects.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy.orm import Session

from orchestration.database import SessionLocal, utcnow
from orchestration.models.directory import Agent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: Any = None
    error: Optional[str] = None


class AgentCapability(Protocol):
    def invoke(self, action: str, inputs: dict, context: dict) -> AgentResult:
        ...


AgentFactory = Callable[[Agent], AgentCapability]


class UnknownAgentType(LookupError):
    pass


class EchoAgent:
    """Returns its inputs. Useful for dry runs of a workflow graph."""

    def __init__(self, agent: Agent):
        self.agent_id = agent.id

    def invoke(self, action: str, inputs: dict, context: dict) -> AgentResult:
        return AgentResult(success=True, output={"action": action, "inputs": inputs})


class AgentRegistry:
    def __init__(self, factories: Optional[Dict[str, AgentFactory]] = None):
        self._factories: Dict[str, AgentFactory] = dict(factories or {})

    def register(self, agent_type: str, factory: AgentFactory) -> None:
        self._factories[agent_type] = factory

    def build(self, agent: Agent) -> AgentCapability:
        factory = self._factories.get(agent.agent_type)
        if factory is None:
            raise UnknownAgentType(f"No implementation registered for agent type '{agent.agent_type}'")
        return factory(agent)


default_registry = AgentRegistry({"echo": EchoAgent})


_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor(max_workers: int) -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent-step")
        return _executor


def _load_agent(db: Session, workspace_id: str, agent_id: str) -> Optional[Agent]:
    return (
        db.query(Agent)
        .filter(Agent.id == str(agent_id), Agent.workspace_id == str(workspace_id))
        .first()
    )


def invoke_agent(
    *,
    workspace_id: str,
    agent_id: str,
    action: str,
    inputs: dict,
    context: dict,
    registry: AgentRegistry,
    timeout_ms: Optional[int] = None,
    max_workers: int = 8,
) -> AgentResult:
    """Invoke ``action`` on the agent. Errors and timeouts come back as failed results."""
    db = SessionLocal()
    try:
        agent = _load_agent(db, workspace_id, agent_id)
        if agent is None:
            return AgentResult(success=False, error=f"Agent not found: {agent_id}")

        if agent.status != "active":
            return AgentResult(
                success=False,
                error=f"Agent is not active: {agent.name} (status: {agent.status})",
            )

        try:
            capability = registry.build(agent)
        except UnknownAgentType as exc:
            return AgentResult(success=False, error=str(exc))

        agent.execution_count = int(agent.execution_count or 0) + 1
        agent.last_executed_at = utcnow()
        db.commit()
    finally:
        db.close()

    future = _get_executor(max_workers).submit(capability.invoke, action, inputs, context)
    timeout = None if not timeout_ms else timeout_ms / 1000.0

    try:
        result = future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning(
            "Agent invocation timed out",
            extra={"agent_id": agent_id, "action": action, "timeout_ms": timeout_ms},
        )
        return AgentResult(success=False, error=f"Timed out after {timeout_ms}ms")
    except Exception as exc:
        logger.exception(
            "Agent invocation raised",
            extra={"agent_id": agent_id, "action": action},
        )
        return AgentResult(success=False, error=str(exc) or exc.__class__.__name__)

    if isinstance(result, AgentResult):
        return result
    return AgentResult(success=True, output=result)
