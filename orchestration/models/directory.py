"""Rows owned by the identity/agent directory. The orchestration core only reads them."""

from sqlalchemy import Column, DateTime, Integer, String

from orchestration.database import Base, JSONDocument, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full or (self.email or self.id)


class AgentTeam(Base):
    __tablename__ = "agent_teams"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    department = Column(String, nullable=False, default="general")
    status = Column(String, nullable=False, default="active")

    # {"autonomy_level": ..., "approval_required": [...], "risk_rules": {...}}
    config = Column(JSONDocument, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False, index=True)
    team_id = Column(String, nullable=True, index=True)

    name = Column(String, nullable=False)
    agent_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")

    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)
