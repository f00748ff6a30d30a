# followup_engine/engine/service.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from followup_engine.channels.router import ChannelRouter, build_router
from followup_engine.common.clock import Clock, SystemClock
from followup_engine.config import Settings, get_settings
from followup_engine.engine.dispatcher import Dispatcher
from followup_engine.engine.ledger import TouchpointLedger
from followup_engine.engine.reply_detector import ReplyDetector
from followup_engine.engine.runs import RunStateMachine
from followup_engine.engine.sequences import SequenceTemplateStore
from followup_engine.repo.base import EngineStore
from followup_engine.repo.memory_store import InMemoryStore
from followup_engine.repo.students import (
    InMemoryStudentDirectory,
    StudentDirectory,
    SupabaseStudentDirectory,
)

log = logging.getLogger("followups.engine")


@dataclass
class FollowUpEngine:
    """Everything the web app and the worker need, wired to one store and clock."""
    settings: Settings
    clock: Clock
    store: EngineStore
    students: StudentDirectory
    router: ChannelRouter
    sequences: SequenceTemplateStore
    ledger: TouchpointLedger
    runs: RunStateMachine
    replies: ReplyDetector
    dispatcher: Dispatcher

    async def close(self) -> None:
        await self.store.close()


def wire_engine(
    settings: Settings,
    *,
    store: EngineStore,
    students: StudentDirectory,
    router: ChannelRouter,
    clock: Optional[Clock] = None,
) -> FollowUpEngine:
    clock = clock or SystemClock()
    sequences = SequenceTemplateStore(store)
    ledger = TouchpointLedger(store, clock)
    runs = RunStateMachine(
        store,
        sequences,
        students,
        clock=clock,
        restricted_statuses=settings.RESTRICTED_ENROLLMENT_STATUSES,
        enforce_eligibility=settings.ENFORCE_ENROLLMENT_ELIGIBILITY,
    )
    replies = ReplyDetector(store, runs, clock=clock, halt_all_channels=settings.REPLY_HALTS_ALL_CHANNELS)
    # idempotent, so it also runs for redelivered events
    ledger.subscribe(replies.on_touchpoint, replay_duplicates=True)
    dispatcher = Dispatcher(
        store,
        runs,
        ledger,
        students,
        router,
        clock=clock,
        batch_size=settings.CLAIM_BATCH_SIZE,
        lease_seconds=settings.CLAIM_LEASE_SECONDS,
        backoff_scale=settings.RETRY_BACKOFF_SCALE,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
    )
    return FollowUpEngine(
        settings=settings,
        clock=clock,
        store=store,
        students=students,
        router=router,
        sequences=sequences,
        ledger=ledger,
        runs=runs,
        replies=replies,
        dispatcher=dispatcher,
    )


async def build_engine(settings: Optional[Settings] = None) -> FollowUpEngine:
    """Pick backends from settings: Postgres/Supabase when configured, in-memory otherwise."""
    settings = settings or get_settings()
    clock = SystemClock()

    store: EngineStore
    if settings.DATABASE_URL:
        from followup_engine.repo.pg_store import PgStore

        store = await PgStore.connect(
            settings.DATABASE_URL,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            acquire_timeout=settings.DB_ACQUIRE_TIMEOUT_SECONDS,
        )
        log.info("🗄️  Engine store: Postgres")
    else:
        store = InMemoryStore(clock)
        log.warning("DATABASE_URL not set; using in-memory store (state is lost on restart)")

    students: StudentDirectory
    if settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY:
        students = SupabaseStudentDirectory.from_settings(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        log.info("👥 Student directory: Supabase")
    else:
        students = InMemoryStudentDirectory()
        log.warning("Supabase not configured; student directory is empty in-memory")

    return wire_engine(settings, store=store, students=students, router=build_router(settings), clock=clock)
