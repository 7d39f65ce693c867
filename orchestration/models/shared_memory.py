import uuid
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.schema import Index, UniqueConstraint

from orchestration.database import Base, JSONDocument, utcnow

MEMORY_TIERS = ("short_term", "medium_term", "long_term")
MEMORY_CATEGORIES = ("context", "pattern", "preference", "knowledge", "relationship")


def memory_scope_key(team_id: Optional[str], agent_id: Optional[str]) -> str:
    return f"{team_id or ''}:{agent_id or ''}"


class SharedMemoryEntry(Base):
    __tablename__ = "agent_shared_memory"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    team_id = Column(String, nullable=True, index=True)
    agent_id = Column(String, nullable=True, index=True)

    # team_id/agent_id with NULLs folded in, so the identity is enforceable.
    scope_key = Column(String, nullable=False)

    memory_tier = Column(String, nullable=False)
    category = Column(String, nullable=False)
    key = Column(String, nullable=False)
    value = Column(JSONDocument, nullable=True)
    meta = Column("metadata", JSONDocument, nullable=False)
    importance = Column(Integer, nullable=False, default=50)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "scope_key", "key", name="uq_agent_shared_memory_identity"),
        Index("ix_agent_shared_memory_rank", "workspace_id", "importance", "updated_at"),
    )
