from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orchestration.core.logging import configure_logging
from orchestration.services.outbox_worker import start_outbox_worker_tasks
from orchestration import models  # noqa: F401
from orchestration.routers.approvals import router as approvals_router
from orchestration.routers.auth import router as auth_router
from orchestration.routers.memory import router as memory_router
from orchestration.routers.outbox import router as outbox_router
from orchestration.routers.workflows import router as workflows_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    tasks = start_outbox_worker_tasks()
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # worker crash during shutdown; already logged.
                pass


app = FastAPI(
    title="Agent Orchestration",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(workflows_router)
app.include_router(approvals_router)
app.include_router(memory_router)
app.include_router(outbox_router)


@app.get("/")
def root():
    return {"status": "Agent Orchestration running"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
