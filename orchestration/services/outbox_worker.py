import asyncio
import logging
import os
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError

from orchestration.core.settings import Settings, load_settings
from orchestration import database
from orchestration.database import utcnow
from orchestration.services.outbox_handlers import build_handlers
from orchestration.services.outbox_processor import process_outbox_batch

logger = logging.getLogger(__name__)


def outbox_worker_enabled() -> bool:
    # Disable by default under pytest to keep tests deterministic.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    v = os.getenv("OUTBOX_WORKER_ENABLED")
    if v is None:
        return True
    return v.strip() not in {"0", "false", "False", "no", "NO"}


def _dispose_engine() -> None:
    if database.engine is not None:
        database.engine.dispose()


async def outbox_worker_loop(*, settings: Settings, loop_index: int = 0) -> None:
    """
    One batch loop. Several may run side by side; SKIP LOCKED plus the claim
    lease keep them from handling the same row.

    Handlers run blocking engine code (agent calls, retry backoff), so each
    batch runs in a worker thread.

    Goals:
      - Never crash the server on transient DB failures.
      - Recover if Postgres restarts / connections are terminated.
    """
    poll_seconds = float(settings.outbox_poll_seconds)
    handlers = build_handlers(settings=settings)

    logger.info(
        "Outbox worker started",
        extra={
            "poll_seconds": poll_seconds,
            "batch_size": int(settings.outbox_batch_size),
            "loop_index": loop_index,
        },
    )

    while True:
        try:
            await asyncio.to_thread(
                process_outbox_batch,
                now=utcnow(),
                batch_size=settings.outbox_batch_size,
                max_retries=settings.outbox_max_retries,
                lease_seconds=settings.outbox_claim_lease_seconds,
                handlers=handlers,
            )

        except asyncio.CancelledError:
            logger.info("Outbox worker cancelled; shutting down", extra={"loop_index": loop_index})
            raise

        except (OperationalError, DBAPIError):
            # Postgres restarted / connection killed; next tick gets fresh connections.
            _dispose_engine()
            logger.exception(
                "Outbox worker tick failed",
                extra={"component": "outbox_worker", "reason": "dbapi_error", "loop_index": loop_index},
            )

        except Exception:
            # Do NOT crash the server; log and keep trying.
            logger.exception(
                "Outbox worker tick failed",
                extra={"component": "outbox_worker", "reason": "unexpected", "loop_index": loop_index},
            )

        await asyncio.sleep(poll_seconds)


def start_outbox_worker_tasks(settings: Optional[Settings] = None) -> list[asyncio.Task]:
    if not outbox_worker_enabled():
        logger.info("Outbox worker disabled")
        return []

    settings = settings or load_settings()
    return [
        asyncio.create_task(outbox_worker_loop(settings=settings, loop_index=i))
        for i in range(int(settings.outbox_concurrency))
    ]
