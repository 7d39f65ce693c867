import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import or_

from orchestration.core.errors import InvalidRequest, NotFound
from orchestration.core.settings import Settings, load_settings
from orchestration.database import SessionLocal, as_utc, utcnow
from orchestration.models.shared_memory import (
    MEMORY_CATEGORIES,
    MEMORY_TIERS,
    SharedMemoryEntry,
    memory_scope_key,
)

logger = logging.getLogger(__name__)


def default_expiry(memory_tier: str, settings: Settings, now: datetime) -> Optional[datetime]:
    """Tier convention for callers: short and medium term expire, long term does not."""
    if memory_tier == "short_term":
        return now + timedelta(hours=settings.memory_short_term_ttl_hours)
    if memory_tier == "medium_term":
        return now + timedelta(hours=settings.memory_medium_term_ttl_hours)
    return None


def _validate(memory_tier: str, category: str, key: str, importance: int) -> None:
    if memory_tier not in MEMORY_TIERS:
        raise InvalidRequest(f"Unknown memory tier: {memory_tier}")
    if category not in MEMORY_CATEGORIES:
        raise InvalidRequest(f"Unknown memory category: {category}")
    if not key or not str(key).strip():
        raise InvalidRequest("key is required")
    if isinstance(importance, bool) or not isinstance(importance, int) or not 0 <= importance <= 100:
        raise InvalidRequest("importance must be an integer between 0 and 100")


def _visible(now: datetime):
    return or_(SharedMemoryEntry.expires_at.is_(None), SharedMemoryEntry.expires_at > now)


def _serialize(entry: SharedMemoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "workspace_id": entry.workspace_id,
        "team_id": entry.team_id,
        "agent_id": entry.agent_id,
        "memory_tier": entry.memory_tier,
        "category": entry.category,
        "key": entry.key,
        "value": entry.value,
        "metadata": entry.meta or {},
        "importance": entry.importance,
        "expires_at": as_utc(entry.expires_at),
        "created_at": as_utc(entry.created_at),
        "updated_at": as_utc(entry.updated_at),
    }


def _find(db: Session, workspace_id: str, scope_key: str, key: str) -> Optional[SharedMemoryEntry]:
    return (
        db.query(SharedMemoryEntry)
        .filter(
            SharedMemoryEntry.workspace_id == str(workspace_id),
            SharedMemoryEntry.scope_key == scope_key,
            SharedMemoryEntry.key == key,
        )
        .populate_existing()
        .first()
    )


def _apply(entry: SharedMemoryEntry, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        setattr(entry, name, value)


def store(
    workspace_id: str,
    *,
    memory_tier: str,
    category: str,
    key: str,
    value: Any = None,
    metadata: Optional[dict] = None,
    importance: int = 50,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> str:
    """Upsert on (workspace, team, agent, key). Last writer wins.

    No tier defaults are applied here; ``expires_at`` is stored as given.
    If db is provided, the caller commits.
    """
    _validate(memory_tier, category, key, importance)
    now = now or utcnow()
    scope_key = memory_scope_key(team_id, agent_id)

    fields = {
        "memory_tier": memory_tier,
        "category": category,
        "value": value,
        "meta": dict(metadata or {}),
        "importance": importance,
        "expires_at": expires_at,
        "updated_at": now,
    }

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        entry = _find(db, workspace_id, scope_key, key)
        if entry is not None:
            _apply(entry, fields)
            db.flush()
        else:
            entry = SharedMemoryEntry(
                workspace_id=str(workspace_id),
                team_id=team_id,
                agent_id=agent_id,
                scope_key=scope_key,
                key=key,
                created_at=now,
                **fields,
            )
            db.add(entry)
            try:
                db.flush()
            except IntegrityError:
                # A concurrent writer inserted the same identity first.
                if not owns_db:
                    raise
                db.rollback()
                entry = _find(db, workspace_id, scope_key, key)
                if entry is None:
                    raise
                _apply(entry, fields)
                db.flush()

        entry_id = entry.id
        if owns_db:
            db.commit()

        logger.debug(
            "Memory stored",
            extra={"memory_id": entry_id, "key": key, "memory_tier": memory_tier},
        )
        return entry_id
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def query(
    workspace_id: str,
    *,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    memory_tier: Optional[str] = None,
    category: Optional[str] = None,
    key_pattern: Optional[str] = None,
    min_importance: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    if memory_tier is not None and memory_tier not in MEMORY_TIERS:
        raise InvalidRequest(f"Unknown memory tier: {memory_tier}")
    if category is not None and category not in MEMORY_CATEGORIES:
        raise InvalidRequest(f"Unknown memory category: {category}")

    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        q = (
            db.query(SharedMemoryEntry)
            .filter(SharedMemoryEntry.workspace_id == str(workspace_id))
            .filter(_visible(now))
        )
        if team_id is not None:
            q = q.filter(SharedMemoryEntry.team_id == team_id)
        if agent_id is not None:
            q = q.filter(SharedMemoryEntry.agent_id == agent_id)
        if memory_tier is not None:
            q = q.filter(SharedMemoryEntry.memory_tier == memory_tier)
        if category is not None:
            q = q.filter(SharedMemoryEntry.category == category)
        if key_pattern:
            q = q.filter(SharedMemoryEntry.key.contains(key_pattern, autoescape=True))
        if min_importance is not None:
            q = q.filter(SharedMemoryEntry.importance >= int(min_importance))

        rows = (
            q.order_by(
                SharedMemoryEntry.importance.desc(),
                SharedMemoryEntry.updated_at.desc(),
                SharedMemoryEntry.id.asc(),
            )
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
        return [_serialize(r) for r in rows]
    finally:
        if owns_db:
            db.close()


def get(
    workspace_id: str,
    key: str,
    *,
    team_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> Optional[Dict[str, Any]]:
    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        entry = _find(db, workspace_id, memory_scope_key(team_id, agent_id), key)
        if entry is None:
            return None
        expires_at = as_utc(entry.expires_at)
        if expires_at is not None and expires_at <= now:
            return None
        return _serialize(entry)
    finally:
        if owns_db:
            db.close()


def _get_owned(db: Session, workspace_id: str, memory_id: str) -> SharedMemoryEntry:
    entry = (
        db.query(SharedMemoryEntry)
        .filter(
            SharedMemoryEntry.id == str(memory_id),
            SharedMemoryEntry.workspace_id == str(workspace_id),
        )
        .first()
    )
    if entry is None:
        raise NotFound("Memory entry not found")
    return entry


def update_importance(workspace_id: str, memory_id: str, importance: int, *, now: Optional[datetime] = None) -> int:
    clamped = max(0, min(100, int(importance)))

    db = SessionLocal()
    try:
        entry = _get_owned(db, workspace_id, memory_id)
        entry.importance = clamped
        entry.updated_at = now or utcnow()
        db.commit()
        return clamped
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def delete(workspace_id: str, memory_id: str) -> bool:
    db = SessionLocal()
    try:
        entry = _get_owned(db, workspace_id, memory_id)
        db.delete(entry)
        db.commit()
        logger.info("Memory deleted", extra={"memory_id": str(memory_id)})
        return True
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def cleanup(workspace_id: str, *, now: Optional[datetime] = None) -> int:
    """Hard-delete entries whose expiry has passed. Queries already hide them."""
    now = now or utcnow()

    db = SessionLocal()
    try:
        deleted = (
            db.query(SharedMemoryEntry)
            .filter(
                SharedMemoryEntry.workspace_id == str(workspace_id),
                SharedMemoryEntry.expires_at.isnot(None),
                SharedMemoryEntry.expires_at <= now,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Expired memories purged", extra={"workspace_id": str(workspace_id), "deleted": deleted})
        return int(deleted)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def share_context(
    workspace_id: str,
    from_agent_id: str,
    to_agent_id: str,
    context: Dict[str, Any],
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> str:
    settings = settings or load_settings()
    now = now or utcnow()

    logger.info(
        "Sharing context",
        extra={"from_agent_id": from_agent_id, "to_agent_id": to_agent_id, "context_keys": sorted(context)},
    )
    return store(
        workspace_id,
        agent_id=to_agent_id,
        memory_tier="short_term",
        category="context",
        key=f"shared_from_{from_agent_id}",
        value=context,
        metadata={"source": f"agent:{from_agent_id}"},
        importance=60,
        expires_at=default_expiry("short_term", settings, now),
        now=now,
    )


def get_shared_context(
    workspace_id: str,
    agent_id: str,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Merge of the agent's short-term context entries; higher ranked entries win on key clashes."""
    entries = query(
        workspace_id,
        agent_id=agent_id,
        memory_tier="short_term",
        category="context",
        limit=20,
        now=now,
        db=db,
    )

    merged: Dict[str, Any] = {}
    for entry in reversed(entries):
        if isinstance(entry["value"], dict):
            merged.update(entry["value"])
    return merged
