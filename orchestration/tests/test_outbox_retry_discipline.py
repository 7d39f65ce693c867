from datetime import timedelta

from orchestration.database import SessionLocal, as_utc
from orchestration.models.event_outbox import EventOutbox
from orchestration.services.outbox_processor import process_outbox_batch


def test_outbox_retry_increments_and_then_processes():
    db = SessionLocal()
    try:
        # Insert a row that will FAIL first (unknown event_type)
        row = EventOutbox(
            workspace_id="ws-1",
            event_type="UNKNOWN_EVENT",
            idempotency_key="k-retry-1",
            payload={"x": 1},
            processed=False,
            retry_count=0,
        )
        db.add(row)
        db.commit()
        db.refresh(row)

        created_at = as_utc(row.created_at)
        now0 = created_at + timedelta(seconds=1)

        # First pass: should fail and increment retry_count (unknown event_type)
        r1 = process_outbox_batch(db=db, now=now0, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r1.processed == 0
        assert r1.failed == 1
        assert row.processed is False
        assert row.retry_count == 1

        # Same time again: retry_count=1 => 2 seconds after created_at, not due yet
        r2 = process_outbox_batch(db=db, now=now0, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r2.processed == 0
        assert r2.failed == 0
        assert row.retry_count == 1

        # Past the backoff: fails again => retry_count=2, next due at created_at + 4s
        now2 = created_at + timedelta(seconds=3)
        r3 = process_outbox_batch(db=db, now=now2, batch_size=10, max_retries=10, handlers={})
        db.refresh(row)
        assert r3.processed == 0
        assert r3.failed == 1
        assert row.retry_count == 2
        assert as_utc(row.available_at) == created_at + timedelta(seconds=4)

        # Handler registered now: processes once due
        now3 = created_at + timedelta(seconds=5)
        r4 = process_outbox_batch(
            db=db,
            now=now3,
            batch_size=10,
            max_retries=10,
            handlers={"UNKNOWN_EVENT": lambda _row, _db: None},
        )
        db.refresh(row)
        assert r4.processed == 1
        assert row.processed is True
        assert row.retry_count == 2

    finally:
        db.rollback()
        db.close()
