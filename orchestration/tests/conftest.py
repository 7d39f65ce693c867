import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import subprocess
import tempfile
import time
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

_DEFAULT_SQLITE_PATH = Path(tempfile.gettempdir()) / "agent_orchestration_test.db"
TEST_DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{_DEFAULT_SQLITE_PATH}")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from orchestration import database
from orchestration import models  # noqa: F401
from orchestration.agents.registry import AgentRegistry, AgentResult, EchoAgent
from orchestration.core.settings import Settings
from orchestration.models.directory import Agent, AgentTeam, User
from orchestration.services import workflow_service

WORKSPACE_ID = "ws-1"


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


def _reset_sqlite_file(database_url: str) -> None:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite") or not url.database:
        return
    path = Path(url.database)
    if path.exists():
        path.unlink()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    database.engine.dispose()
    _reset_sqlite_file(TEST_DATABASE_URL)
    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )

    database.configure_database()


def _empty_all_tables() -> None:
    with database.engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            rows = conn.execute(
                text(
                    """
                    SELECT tablename
                    FROM pg_tables
                    WHERE schemaname = 'public'
                      AND tablename <> 'alembic_version'
                    """
                )
            ).fetchall()

            table_names = [row[0] for row in rows]
            if table_names:
                quoted = ", ".join([f'"public"."{name}"' for name in table_names])
                conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))
            return

        for table in reversed(database.Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _empty_all_tables()
    yield
    _empty_all_tables()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def user_factory():
    def _create(*, workspace_id: str = WORKSPACE_ID, first_name: str = "Ada", last_name: str = "Lovelace") -> User:
        db = database.SessionLocal()
        try:
            user = User(
                id=str(uuid4()),
                workspace_id=workspace_id,
                first_name=first_name,
                last_name=last_name,
                email=f"{first_name.lower()}@example.com",
            )
            db.add(user)
            db.commit()
            return user
        finally:
            db.close()

    return _create


@pytest.fixture
def team_factory():
    def _create(
        *,
        workspace_id: str = WORKSPACE_ID,
        autonomy_level: str = "autonomous",
        approval_required: list | None = None,
        risk_rules: dict | None = None,
        name: str = "Revenue Ops",
        department: str = "sales",
        status: str = "active",
    ) -> AgentTeam:
        config = {"autonomy_level": autonomy_level, "approval_required": approval_required or []}
        if risk_rules is not None:
            config["risk_rules"] = risk_rules

        db = database.SessionLocal()
        try:
            team = AgentTeam(
                id=str(uuid4()),
                workspace_id=workspace_id,
                name=name,
                department=department,
                status=status,
                config=config,
            )
            db.add(team)
            db.commit()
            return team
        finally:
            db.close()

    return _create


@pytest.fixture
def agent_factory():
    def _create(
        *,
        workspace_id: str = WORKSPACE_ID,
        team_id: str | None = None,
        agent_type: str = "recording",
        status: str = "active",
        name: str = "Agent",
    ) -> Agent:
        db = database.SessionLocal()
        try:
            agent = Agent(
                id=str(uuid4()),
                workspace_id=workspace_id,
                team_id=team_id,
                name=name,
                agent_type=agent_type,
                status=status,
                execution_count=0,
            )
            db.add(agent)
            db.commit()
            return agent
        finally:
            db.close()

    return _create


@pytest.fixture
def workflow_factory():
    def _create(
        *,
        steps: list,
        workspace_id: str = WORKSPACE_ID,
        team_id: str | None = None,
        status: str = "active",
        name: str = "Lead follow-up",
        created_by: str | None = None,
    ) -> dict:
        return workflow_service.create_workflow(
            workspace_id,
            {
                "name": name,
                "description": "Follows up on new leads",
                "team_id": team_id,
                "trigger_type": "manual",
                "trigger_config": None,
                "steps": steps,
                "status": status,
            },
            created_by=created_by,
        )

    return _create


class _RecordingAgent:
    def __init__(self, agent: Agent, calls: list, *, succeed: bool = True, delay: float = 0.0, hook=None):
        self.agent_id = agent.id
        self.calls = calls
        self.succeed = succeed
        self.delay = delay
        self.hook = hook

    def invoke(self, action: str, inputs: dict, context: dict) -> AgentResult:
        self.calls.append({"agent_id": self.agent_id, "action": action, "inputs": inputs, "context": context})
        if self.hook is not None:
            self.hook(self.agent_id, action, inputs, context)
        if self.delay:
            time.sleep(self.delay)
        if not self.succeed:
            return AgentResult(success=False, error="boom")
        return AgentResult(success=True, output={"action": action, "echo": inputs})


class RecordingRegistry(AgentRegistry):
    """Agent types for tests: recording (succeeds), failing, slow, raising, hooked."""

    def __init__(self):
        super().__init__({"echo": EchoAgent})
        self.calls: list = []
        self.hook = None
        self.register("recording", lambda agent: _RecordingAgent(agent, self.calls))
        self.register("failing", lambda agent: _RecordingAgent(agent, self.calls, succeed=False))
        self.register("slow", lambda agent: _RecordingAgent(agent, self.calls, delay=0.5))
        self.register("hooked", lambda agent: _RecordingAgent(agent, self.calls, hook=self.hook))
        self.register("raising", lambda agent: _RaisingAgent())

    def calls_for(self, agent_id: str) -> list:
        return [c for c in self.calls if c["agent_id"] == agent_id]


class _RaisingAgent:
    def invoke(self, action: str, inputs: dict, context: dict) -> AgentResult:
        raise RuntimeError("agent exploded")


@pytest.fixture
def registry() -> RecordingRegistry:
    return RecordingRegistry()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep
