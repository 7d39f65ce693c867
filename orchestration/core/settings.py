import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    approval_default_expiry_hours: float = 24.0
    approval_max_expiry_hours: float = 168.0

    memory_short_term_ttl_hours: float = 24.0
    memory_medium_term_ttl_hours: float = 720.0

    workflow_recent_executions: int = 10
    workflow_default_max_attempts: int = 1
    step_executor_max_workers: int = 8
    version_cas_max_retries: int = 5

    outbox_poll_seconds: float = 1.0
    outbox_batch_size: int = 50
    outbox_max_retries: int = 10
    outbox_concurrency: int = 1
    outbox_claim_lease_seconds: float = 300.0


def load_settings() -> Settings:
    """Build settings from the environment. Unset or malformed values keep their defaults."""
    return Settings(
        approval_default_expiry_hours=_env_float("APPROVAL_DEFAULT_EXPIRY_HOURS", 24.0),
        approval_max_expiry_hours=_env_float("APPROVAL_MAX_EXPIRY_HOURS", 168.0),
        memory_short_term_ttl_hours=_env_float("MEMORY_SHORT_TERM_TTL_HOURS", 24.0),
        memory_medium_term_ttl_hours=_env_float("MEMORY_MEDIUM_TERM_TTL_HOURS", 720.0),
        workflow_recent_executions=_env_int("WORKFLOW_RECENT_EXECUTIONS", 10),
        workflow_default_max_attempts=max(1, _env_int("WORKFLOW_DEFAULT_MAX_ATTEMPTS", 1)),
        step_executor_max_workers=max(1, _env_int("STEP_EXECUTOR_MAX_WORKERS", 8)),
        version_cas_max_retries=max(1, _env_int("VERSION_CAS_MAX_RETRIES", 5)),
        outbox_poll_seconds=_env_float("OUTBOX_POLL_SECONDS", 1.0),
        outbox_batch_size=_env_int("OUTBOX_BATCH_SIZE", 50),
        outbox_max_retries=_env_int("OUTBOX_MAX_RETRIES", 10),
        outbox_concurrency=max(1, _env_int("OUTBOX_CONCURRENCY", 1)),
        outbox_claim_lease_seconds=_env_float("OUTBOX_CLAIM_LEASE_SECONDS", 300.0),
    )
