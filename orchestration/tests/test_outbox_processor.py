from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orchestration.database import SessionLocal, as_utc
from orchestration.models.event_outbox import EventOutbox
from orchestration.services.outbox_processor import _retry_wait, process_outbox_batch

EVENT = "WORKFLOW_EXECUTION_STARTED"


def _insert_event(db, *, workspace_id: str, event_type: str, key: str, payload: dict) -> EventOutbox:
    row = EventOutbox(
        workspace_id=workspace_id,
        event_type=event_type,
        idempotency_key=key,
        payload=payload,
    )
    db.add(row)
    db.flush()
    db.refresh(row)
    return row


def test_process_outbox_marks_processed_on_success():
    seed = SessionLocal()
    try:
        _insert_event(
            seed,
            workspace_id="ws-1",
            event_type=EVENT,
            key="k1",
            payload={"execution_id": "e-1"},
        )
        seed.commit()
    finally:
        seed.close()

    seen = []

    def handler(row: EventOutbox, db):
        assert row.event_type == EVENT
        assert row.payload["execution_id"] == "e-1"
        assert row.processed is False
        seen.append(row.id)

    now = datetime.now(timezone.utc)

    db = SessionLocal()
    try:
        result = process_outbox_batch(
            db=db,
            now=now,
            batch_size=10,
            max_retries=10,
            handlers={EVENT: handler},
        )
        db.commit()

        fresh = db.query(EventOutbox).filter(EventOutbox.idempotency_key == "k1").one()
        assert fresh.processed is True
        assert fresh.processed_at is not None
        assert int(fresh.retry_count) == 0
        assert result.processed == 1
        assert result.failed == 0
        assert len(seen) == 1
    finally:
        db.close()


def test_process_outbox_increments_retry_on_failure():
    seed = SessionLocal()
    try:
        _insert_event(seed, workspace_id="ws-1", event_type=EVENT, key="k2", payload={"x": 1})
        seed.commit()
    finally:
        seed.close()

    def handler(_row: EventOutbox, _db):
        raise RuntimeError("boom")

    now = datetime.now(timezone.utc)

    db = SessionLocal()
    try:
        result = process_outbox_batch(
            db=db,
            now=now,
            batch_size=10,
            max_retries=10,
            handlers={EVENT: handler},
        )
        db.commit()

        fresh = db.query(EventOutbox).filter(EventOutbox.idempotency_key == "k2").one()
        assert fresh.processed is False
        assert fresh.processed_at is None
        assert int(fresh.retry_count) == 1
        assert as_utc(fresh.available_at) == as_utc(fresh.created_at) + timedelta(seconds=2)
        assert result.processed == 0
        assert result.failed == 1
    finally:
        db.close()


def test_unknown_event_type_counts_as_failure():
    seed = SessionLocal()
    try:
        _insert_event(seed, workspace_id="ws-1", event_type="SOMETHING_ELSE", key="k3", payload={})
        seed.commit()
    finally:
        seed.close()

    result = process_outbox_batch(now=datetime.now(timezone.utc), handlers={EVENT: lambda row, db: None})
    assert result.processed == 0
    assert result.failed == 1

    db = SessionLocal()
    try:
        fresh = db.query(EventOutbox).filter(EventOutbox.idempotency_key == "k3").one()
        assert fresh.processed is False
        assert int(fresh.retry_count) == 1
    finally:
        db.close()


def test_row_is_given_up_after_max_retries():
    seed = SessionLocal()
    try:
        row = _insert_event(seed, workspace_id="ws-1", event_type=EVENT, key="k4", payload={})
        row.retry_count = 2
        seed.commit()
    finally:
        seed.close()

    def handler(_row, _db):
        raise RuntimeError("still broken")

    result = process_outbox_batch(
        now=datetime.now(timezone.utc),
        max_retries=3,
        handlers={EVENT: handler},
    )
    assert result.failed == 1

    db = SessionLocal()
    try:
        fresh = db.query(EventOutbox).filter(EventOutbox.idempotency_key == "k4").one()
        assert int(fresh.retry_count) == 3
        assert fresh.processed is True
        assert fresh.processed_at is not None
    finally:
        db.close()


def test_claimed_rows_are_leased_until_handled():
    seed = SessionLocal()
    try:
        _insert_event(seed, workspace_id="ws-1", event_type=EVENT, key="k5", payload={})
        seed.commit()
    finally:
        seed.close()

    now = datetime.now(timezone.utc)
    observed = {}

    def handler(row, _db):
        check = SessionLocal()
        try:
            committed = check.query(EventOutbox).filter(EventOutbox.id == row.id).one()
            observed["available_at"] = as_utc(committed.available_at)
            observed["processed"] = committed.processed
        finally:
            check.close()

    process_outbox_batch(now=now, lease_seconds=120, handlers={EVENT: handler})

    # The claim is committed before the handler runs.
    assert observed["processed"] is False
    assert observed["available_at"] == now + timedelta(seconds=120)


@pytest.mark.parametrize(
    "retry_count,seconds",
    [(0, 0), (1, 2), (2, 4), (3, 8), (6, 60), (12, 60)],
)
def test_retry_wait_is_capped_exponential(retry_count, seconds):
    assert _retry_wait(retry_count) == timedelta(seconds=seconds)
