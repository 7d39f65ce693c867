import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from orchestration.database import SessionLocal, as_utc, utcnow
from orchestration.models.event_outbox import EventOutbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxProcessResult:
    processed: int
    failed: int


OutboxHandler = Callable[[EventOutbox, Session], None]


def _retry_wait(retry_count: int) -> timedelta:
    """Deterministic exponential backoff for outbox retries.

    Contract (tests):
      - retry_count <= 0 => 0s
      - retry_count == 1 => 2s
      - retry_count == 2 => 4s
      - retry_count == 3 => 8s
    Capped at 60s.
    """
    n = int(retry_count) if retry_count is not None else 0
    if n <= 0:
        return timedelta(seconds=0)

    seconds = 2**n
    if seconds > 60:
        seconds = 60
    return timedelta(seconds=seconds)


def _default_handlers() -> Dict[str, OutboxHandler]:
    from orchestration.services.outbox_handlers import build_handlers

    return build_handlers()


def _claim_due_rows(db: Session, now: datetime, batch_size: int, lease: timedelta) -> List[EventOutbox]:
    """Lock due rows and push them out of the due window while they are handled.

    The due filter is applied before LIMIT so rows that are still backing
    off never starve due ones.
    """
    rows = (
        db.query(EventOutbox)
        .filter(EventOutbox.processed.is_(False))
        .filter(EventOutbox.available_at <= now)
        .order_by(EventOutbox.id.asc())
        .with_for_update(skip_locked=True)
        .limit(int(batch_size))
        .all()
    )
    for row in rows:
        row.available_at = now + lease
    db.flush()
    return rows


def process_outbox_batch(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
    lease_seconds: float = 300.0,
    handlers: Optional[Dict[str, OutboxHandler]] = None,
) -> OutboxProcessResult:
    """Claim a batch of due rows and dispatch each to its handler.

    With an owned session the claim is committed before any handler runs and
    every row is committed on its own, so handlers that open their own
    sessions (the engine does) never wait on this one. A failed row is
    retried after ``created_at + _retry_wait(retry_count)`` and given up on
    (marked processed) once ``max_retries`` is reached.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    if now is None:
        now = utcnow()

    if handlers is None:
        handlers = _default_handlers()

    processed = 0
    failed = 0

    try:
        rows = _claim_due_rows(db, now, batch_size, timedelta(seconds=float(lease_seconds)))
        if owns_db:
            db.commit()

        for row in rows:
            handler = handlers.get(row.event_type)

            try:
                if handler is None:
                    raise ValueError(f"Unknown event_type: {row.event_type}")

                handler(row, db)

                row.processed = True
                row.processed_at = now
                db.flush()
                processed += 1

            except Exception:
                if owns_db:
                    db.rollback()

                row.retry_count = int(row.retry_count or 0) + 1
                row.available_at = as_utc(row.created_at) + _retry_wait(row.retry_count)

                if int(row.retry_count) >= int(max_retries):
                    row.processed = True
                    row.processed_at = now

                db.flush()
                failed += 1
                logger.exception(
                    "Outbox row processing failed",
                    extra={
                        "event_outbox_id": row.id,
                        "event_type": row.event_type,
                        "retry_count": int(row.retry_count),
                        "max_retries": int(max_retries),
                    },
                )

            if owns_db:
                db.commit()

        return OutboxProcessResult(processed=processed, failed=failed)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
