# followup_engine/config.py
from __future__ import annotations
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv, find_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Only fill missing vars; don't overwrite ones already set in the shell/CI
load_dotenv(find_dotenv(usecwd=True), override=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Storage ──────────────────────────────────────────────────────────────
    # Postgres DSN for the engine tables; in-memory store when empty.
    DATABASE_URL: str = ""
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 5
    # Bound on waiting for a pooled connection; a timeout surfaces as a retryable error
    DB_ACQUIRE_TIMEOUT_SECONDS: float = 30.0

    # Student directory (students + enrollments live in Supabase)
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""

    # ── Web ─────────────────────────────────────────────────────────────────
    WEBHOOK_SECRET: str = "dev-secret"
    ADMIN_API_TOKEN: str = ""
    IDEMPOTENCY_TTL_SECONDS: int = 300
    LOG_LEVEL: str = "INFO"

    # ── Channels ────────────────────────────────────────────────────────────
    LIVE_CHANNELS: bool = False
    FOLLOWUP_WEBHOOK_URL: Optional[str] = None
    SEND_TIMEOUT_SECONDS: float = 15.0

    # ── Scheduler ───────────────────────────────────────────────────────────
    POLL_INTERVAL_SECONDS: float = 30.0
    WORKER_CONCURRENCY: int = 1
    CLAIM_BATCH_SIZE: int = 50
    CLAIM_LEASE_SECONDS: int = 300
    SCHEDULER_IN_PROCESS: bool = False
    # Retry backoff multiplier; tests set this to 0 to avoid sleeping.
    RETRY_BACKOFF_SCALE: float = 1.0
    # Per-channel attempt bounds over the built-in defaults, e.g. {"sms": 6}
    RETRY_MAX_ATTEMPTS: Dict[str, int] = {}

    # ── Reply detection ─────────────────────────────────────────────────────
    # True: any inbound touchpoint halts every active run of the student.
    # False: only runs whose steps use the inbound channel are halted.
    REPLY_HALTS_ALL_CHANNELS: bool = True

    # Enrollment statuses that make a student ineligible for automation
    ENFORCE_ENROLLMENT_ELIGIBILITY: bool = True
    RESTRICTED_ENROLLMENT_STATUSES: tuple[str, ...] = (
        "paid",
        "welcome_package_sent",
        "dropped_out",
        "declined_contract",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
