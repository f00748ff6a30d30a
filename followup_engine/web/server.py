# followup_engine/web/server.py
# ---------------------------------------------------------------------------
# Follow-up engine web server entrypoint
# ---------------------------------------------------------------------------
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from followup_engine.common.errors import (
    ConcurrentModification,
    DuplicateActiveRun,
    FollowUpError,
    InvalidSequence,
    SendFailed,
    StudentNotEligible,
    TemplateRenderError,
    UnknownRun,
    UnknownSequence,
    UnknownStudent,
    UnknownTouchpoint,
)
from followup_engine.common.tracing import setup_logging
from followup_engine.config import Settings, get_settings
from followup_engine.engine.service import FollowUpEngine, build_engine
from followup_engine.engine.worker import start_loops
from followup_engine.web import metrics
from followup_engine.web.idempotency_cache import IdempotencyCache
from followup_engine.web.inbound_webhooks import router as webhooks_router
from followup_engine.web.middleware import setup_middleware
from followup_engine.web.routes_followups import router as followups_router
from followup_engine.web.routes_followups import students_router
from followup_engine.web.routes_sequences import router as sequences_router
from followup_engine.web.routes_touchpoints import router as touchpoints_router
from followup_engine.web.schemas import RunOut

log = logging.getLogger("followups.server")

# error class -> HTTP status; first match wins
_STATUS_FOR_ERROR = (
    (DuplicateActiveRun, 409),
    (ConcurrentModification, 409),
    ((UnknownStudent, UnknownSequence, UnknownRun, UnknownTouchpoint), 404),
    ((StudentNotEligible, InvalidSequence, TemplateRenderError), 422),
    (SendFailed, 502),
)


async def followup_error_handler(request: Request, exc: FollowUpError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_FOR_ERROR if isinstance(exc, cls)), 400)
    content = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, DuplicateActiveRun):
        content["run"] = RunOut.of(exc.run).model_dump(mode="json")
    if status >= 500:
        log.error("Request failed with %s: %s", exc.code, exc)
    return JSONResponse(status_code=status, content=content)


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------
def create_app(engine: Optional[FollowUpEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. Tests pass a ready engine; otherwise the lifespan hook builds
    one from settings and, with SCHEDULER_IN_PROCESS, runs the dispatch loops
    next to the API.
    """
    settings = settings or (engine.settings if engine else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.engine is None
        if owned:
            app.state.engine = await build_engine(settings)

        stop_event = asyncio.Event()
        tasks = []
        if settings.SCHEDULER_IN_PROCESS:
            log.info("⏰ Running scheduler in-process (%d loop(s))", settings.WORKER_CONCURRENCY)
            tasks = start_loops(
                app.state.engine.dispatcher,
                stop_event,
                concurrency=settings.WORKER_CONCURRENCY,
                interval=settings.POLL_INTERVAL_SECONDS,
            )
        try:
            yield
        finally:
            stop_event.set()
            await asyncio.gather(*tasks, return_exceptions=True)
            if owned:
                await app.state.engine.close()
                app.state.engine = None

    app = FastAPI(title="Follow-up Engine API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.idempotency = IdempotencyCache(ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS)

    setup_middleware(app)
    app.add_exception_handler(FollowUpError, followup_error_handler)

    app.include_router(followups_router)
    app.include_router(students_router)
    app.include_router(sequences_router)
    app.include_router(touchpoints_router)
    app.include_router(webhooks_router)
    app.include_router(metrics.router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    port = int(os.getenv("PORT", 8000))
    log.info("🚀 Starting Follow-up Engine API on http://0.0.0.0:%d", port)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
