# followup_engine/engine/worker.py
from __future__ import annotations
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from followup_engine.common.tracing import setup_logging
from followup_engine.config import get_settings
from followup_engine.engine.dispatcher import Dispatcher, default_worker_id
from followup_engine.engine.service import build_engine

log = logging.getLogger("followups.worker")


async def poll_loop(
    dispatcher: Dispatcher,
    stop_event: asyncio.Event,
    *,
    interval: float,
    worker_id: str,
) -> None:
    """Run dispatch passes until stop_event is set; a full batch polls again at once."""
    log.info("🚀 Dispatch loop %s started | interval=%.1fs", worker_id, interval)
    while not stop_event.is_set():
        try:
            report = await dispatcher.dispatch_due_steps(worker_id=worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Dispatch pass on %s crashed: %s", worker_id, e)
            report = None

        if report is not None and report.claimed >= dispatcher.batch_size:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    log.info("Dispatch loop %s stopped", worker_id)


def start_loops(
    dispatcher: Dispatcher,
    stop_event: asyncio.Event,
    *,
    concurrency: int,
    interval: float,
    base_id: Optional[str] = None,
) -> List[asyncio.Task]:
    base_id = base_id or default_worker_id()
    tasks = []
    for n in range(max(1, concurrency)):
        worker_id = f"{base_id}-{n}"
        task = asyncio.create_task(
            poll_loop(dispatcher, stop_event, interval=interval, worker_id=worker_id),
            name=worker_id,
        )
        task.add_done_callback(lambda t: (
            log.error("Loop %s exited with: %s", t.get_name(), t.exception())
            if not t.cancelled() and t.exception() else None
        ))
        tasks.append(task)
    return tasks


async def run() -> None:
    """Entrypoint for the standalone scheduler process."""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    engine = await build_engine(settings)
    log.info(
        "🧠 Follow-up worker starting | loops=%d | poll=%.1fs | batch=%d | live_channels=%s",
        settings.WORKER_CONCURRENCY, settings.POLL_INTERVAL_SECONDS,
        settings.CLAIM_BATCH_SIZE, settings.LIVE_CHANNELS,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    tasks = start_loops(
        engine.dispatcher,
        stop_event,
        concurrency=settings.WORKER_CONCURRENCY,
        interval=settings.POLL_INTERVAL_SECONDS,
    )
    try:
        await stop_event.wait()
        log.info("🛑 Stop signal received, finishing in-flight passes...")
    finally:
        stop_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        await engine.close()
        log.info("✅ Worker stopped cleanly.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt, exiting.")


if __name__ == "__main__":
    main()
