# followup_engine/engine/dispatcher.py
from __future__ import annotations
import logging
import socket
from datetime import datetime
from typing import Mapping, Optional

from tenacity import AsyncRetrying

from followup_engine.channels.router import ChannelRouter
from followup_engine.common.clock import Clock, SystemClock
from followup_engine.common.errors import UnknownStudent, classify_exception
from followup_engine.common.metrics import DISPATCH_TOTAL, SEND_ATTEMPTS
from followup_engine.common.tracing import trace_scope
from followup_engine.domain.models import (
    AutomationRun,
    DispatchReport,
    DueItem,
    SendResult,
    Step,
    Touchpoint,
    dispatch_key,
)
from followup_engine.engine.ledger import TouchpointLedger
from followup_engine.engine.rendering import render_step
from followup_engine.engine.retry_policies import retrying_for
from followup_engine.engine.runs import RunStateMachine
from followup_engine.repo.base import EngineStore
from followup_engine.repo.students import StudentDirectory

log = logging.getLogger("followups.dispatcher")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-dispatcher"


class Dispatcher:
    """
    Sends every step whose due time has passed.

    Per claimed item, under the run lock:
      1. reload the run; a terminal run or a moved step index makes the item stale
      2. a touchpoint already carrying the item's dispatch key means the send
         happened before a crash; skip straight to the advance
      3. render, send with per-channel retries, record the touchpoint
      4. advance the run, settle the item and queue the next step in one save

    Exhausted retries or a permanent error park the item as failed and flag the
    run for staff (needs_attention); nothing further is queued until resume().
    """

    def __init__(
        self,
        store: EngineStore,
        runs: RunStateMachine,
        ledger: TouchpointLedger,
        students: StudentDirectory,
        router: ChannelRouter,
        *,
        clock: Optional[Clock] = None,
        batch_size: int = 50,
        lease_seconds: int = 300,
        backoff_scale: float = 1.0,
        max_attempts: Optional[Mapping[str, int]] = None,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.runs = runs
        self.ledger = ledger
        self.students = students
        self.router = router
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.backoff_scale = backoff_scale
        self.max_attempts = dict(max_attempts or {})
        self.worker_id = worker_id or default_worker_id()

    async def dispatch_due_steps(
        self, now: Optional[datetime] = None, *, worker_id: Optional[str] = None
    ) -> DispatchReport:
        now = now or self.clock.now()
        items = await self.store.claim_due(now, worker_id or self.worker_id, self.batch_size, self.lease_seconds)
        report = DispatchReport(claimed=len(items))
        if not items:
            return report

        log.info("⏰ Claimed %d due step(s) at %s", len(items), now.isoformat())
        for item in items:
            with trace_scope(run_id=item.run_id):
                try:
                    await self._dispatch_one(item, report)
                except Exception as e:
                    # item stays claimed; once the lease lapses the dispatch key check
                    # prevents a second send for whatever already went out
                    report.deferred += 1
                    log.exception("Dispatch of %s:%d deferred: %s", item.run_id, item.step_index, e)

        log.info(
            "Dispatch pass done | claimed=%d sent=%d recovered=%d skipped=%d failed=%d deferred=%d",
            report.claimed, report.sent, report.recovered, report.skipped, report.failed, report.deferred,
        )
        return report

    async def _dispatch_one(self, item: DueItem, report: DispatchReport) -> None:
        async with self.store.run_lock(item.run_id):
            run = await self.store.get_run(item.run_id)
            if run is None or run.is_terminal or run.current_step_index != item.step_index:
                await self.store.update_due(item.model_copy(update={
                    "status": "cancelled", "lease_expires_at": None,
                }))
                report.skipped += 1
                channel = run.steps[item.step_index].channel if run and item.step_index < run.total_steps else "unknown"
                DISPATCH_TOTAL.labels(channel=channel, outcome="stale").inc()
                log.info("Stale due item %s:%d cancelled (run status=%s)",
                         item.run_id, item.step_index, run.status if run else "missing")
                return

            step = run.steps[item.step_index]
            key = dispatch_key(run.id, item.step_index)

            existing = await self.store.get_touchpoint_by_dispatch_key(key)
            if existing is not None:
                report.recovered += 1
                DISPATCH_TOTAL.labels(channel=step.channel, outcome="recovered").inc()
                log.warning("Step %s already sent as touchpoint %s; advancing without resend", key, existing.id)
                sent_at = existing.occurred_at
            else:
                retrying = retrying_for(
                    step.channel,
                    backoff_scale=self.backoff_scale,
                    max_attempts=self.max_attempts.get(step.channel),
                )
                try:
                    tp = await self._send_step(run, step, item, retrying)
                except Exception as e:
                    code, _ = classify_exception(e)
                    error = f"{code}: {e}"
                    attempts = retrying.statistics.get("attempt_number", 0)
                    await self.runs.flag_failure_locked(run, item.model_copy(update={"attempts": item.attempts + attempts}), error)
                    report.failed += 1
                    report.failed_runs.append(run.id)
                    DISPATCH_TOTAL.labels(channel=step.channel, outcome="failed").inc()
                    log.error("❌ Step %s (%s) failed after %d attempt(s): %s; follow-up needs attention",
                              key, step.channel, attempts, error)
                    return
                attempts = retrying.statistics.get("attempt_number", 1)
                report.sent += 1
                DISPATCH_TOTAL.labels(channel=step.channel, outcome="sent").inc()
                log.info("📤 Sent step %s via %s (provider_id=%s, attempts=%d)",
                         key, step.channel, tp.external_id, attempts)
                sent_at = tp.occurred_at
                item = item.model_copy(update={"attempts": item.attempts + attempts})

            saved = await self.runs.advance_locked(run, sent_at=sent_at, item=item)
            if saved.status == "completed":
                report.completed_runs.append(saved.id)

    async def _send_step(
        self, run: AutomationRun, step: Step, item: DueItem, retrying: AsyncRetrying
    ) -> Touchpoint:
        student = await self.students.get(run.student_id)
        if student is None:
            raise UnknownStudent(f"student {run.student_id} not found")
        sequence = await self.store.get_sequence(run.sequence_id)
        content = render_step(step.content_template, student, sequence)
        subject = None
        if step.channel == "email" and sequence is not None:
            subject = render_step(sequence.subject, student, sequence) if sequence.subject else None
        key = dispatch_key(run.id, item.step_index)
        metadata = {"run_id": run.id, "step_index": item.step_index, "dispatch_key": key}

        result: Optional[SendResult] = None
        async for attempt in retrying:
            with attempt:
                SEND_ATTEMPTS.labels(channel=step.channel).inc()
                result = await self.router.send(
                    step.channel, student, content, subject=subject, metadata=metadata
                )
        assert result is not None

        tp = Touchpoint(
            student_id=run.student_id,
            channel=step.channel,
            direction="outbound",
            source="automated",
            message=content,
            occurred_at=self.clock.now(),
            automated_follow_up_id=run.id,
            external_id=result.provider_id,
            external_metadata={
                "provider_status": result.status,
                "step_index": item.step_index,
                "sequence_version": run.sequence_version,
                "subject": subject,
            },
            dispatch_key=key,
        )
        stored, _ = await self.ledger.record(tp)
        return stored
