from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.schema import Index, UniqueConstraint

from orchestration.database import Base, JSONDocument, utcnow


class EventOutbox(Base):
    __tablename__ = "event_outbox"

    id = Column(Integer, primary_key=True)

    workspace_id = Column(String, nullable=False, index=True)

    event_type = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)

    payload = Column(JSONDocument, nullable=False)

    processed = Column(Boolean, nullable=False, server_default="0", default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, server_default="0", default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    # created_at + backoff(retry_count); rows are claimed only once it has passed.
    available_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "workspace_id",
            "event_type",
            "idempotency_key",
            name="uq_event_outbox_idempotency",
        ),
        Index("ix_event_outbox_workspace_event", "workspace_id", "event_type"),
        Index("ix_event_outbox_processed", "processed", "available_at"),
    )
