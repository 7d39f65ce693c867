from datetime import timedelta

import pytest

from orchestration import database
from orchestration.database import SessionLocal, as_utc
from orchestration.models.event_outbox import EventOutbox
from orchestration.services.outbox_processor import process_outbox_batch

pytestmark = pytest.mark.skipif(
    database.engine.dialect.name != "postgresql",
    reason="row locks with SKIP LOCKED need Postgres",
)


def test_outbox_skip_locked_prevents_double_processing():
    """
    Two separate DB sessions attempt to process the same row.
    With SKIP LOCKED, only one session should process it.
    """

    db1 = SessionLocal()
    db2 = SessionLocal()

    try:
        row = EventOutbox(
            workspace_id="ws-1",
            event_type="PENDING_ACTION_RESOLVED",
            idempotency_key="concurrency-test",
            payload={},
            processed=False,
            retry_count=0,
        )
        db1.add(row)
        db1.commit()

        db1.refresh(row)
        now = as_utc(row.available_at) + timedelta(seconds=1)

        def _noop(_row, _db):
            return None

        handlers = {"PENDING_ACTION_RESOLVED": _noop}

        # First worker grabs the row and keeps its transaction open
        result1 = process_outbox_batch(db=db1, now=now, batch_size=10, max_retries=10, handlers=handlers)

        # Second worker attempts to grab same row
        result2 = process_outbox_batch(db=db2, now=now, batch_size=10, max_retries=10, handlers=handlers)

        db1.commit()
        db2.commit()

        assert result1.processed + result2.processed == 1
        assert result1.failed + result2.failed == 0

    finally:
        db1.close()
        db2.close()


def test_locked_row_is_skipped():
    seed = SessionLocal()
    try:
        seed.add(
            EventOutbox(
                workspace_id="ws-1",
                event_type="PENDING_ACTION_RESOLVED",
                idempotency_key="k-locked",
                payload={},
            )
        )
        seed.commit()
    finally:
        seed.close()

    a = SessionLocal()
    b = SessionLocal()
    try:
        a.query(EventOutbox).filter(EventOutbox.idempotency_key == "k-locked").with_for_update().one()

        result = process_outbox_batch(
            db=b,
            batch_size=10,
            max_retries=10,
            handlers={"PENDING_ACTION_RESOLVED": lambda _row, _db: None},
        )
        b.commit()

        assert result.processed == 0
        assert result.failed == 0

        a.rollback()
    finally:
        b.close()
        a.close()
