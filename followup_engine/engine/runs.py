# followup_engine/engine/runs.py
from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from followup_engine.common.clock import Clock, SystemClock, add_minutes
from followup_engine.common.errors import (
    ConcurrentModification,
    StudentNotEligible,
    UnknownRun,
    UnknownStudent,
)
from followup_engine.common.metrics import RUN_TRANSITIONS
from followup_engine.domain.models import AutomationRun, DueItem, RunFilters, Student
from followup_engine.engine.sequences import SequenceTemplateStore
from followup_engine.repo.base import EngineStore
from followup_engine.repo.students import StudentDirectory

log = logging.getLogger("followups.runs")

# A transition gets the freshly loaded run and returns (new_run, save_kwargs),
# or None when the run is already where it should be (no-op).
Transition = Callable[[AutomationRun], Optional[Tuple[AutomationRun, Dict[str, Any]]]]

DEFAULT_RESTRICTED_STATUSES = ("paid", "welcome_package_sent", "dropped_out", "declined_contract")


def check_eligibility(student: Student, restricted: tuple[str, ...] = DEFAULT_RESTRICTED_STATUSES) -> None:
    """
    A student can be automated when they have at least one enrollment and none
    of them is already past the sales funnel (paid, dropped out, ...).
    """
    if not student.enrollment_statuses:
        raise StudentNotEligible(f"student {student.id} has no enrollment")
    blocked = sorted(set(student.enrollment_statuses) & set(restricted))
    if blocked:
        raise StudentNotEligible(f"student {student.id} has enrollment status: {', '.join(blocked)}")


class RunStateMachine:
    """
    activated ──dispatch──▶ ongoing ──dispatch──▶ ... ──last step──▶ completed
        │                      │
        ├── reply ──▶ answer_received
        └── stop  ──▶ disabled

    Terminal states are final: transitions on them are silent no-ops.
    Every mutation runs under store.run_lock(run_id) and is saved with a
    compare-and-swap on run.version, the same discipline the dispatcher uses.
    """

    def __init__(
        self,
        store: EngineStore,
        sequences: SequenceTemplateStore,
        students: StudentDirectory,
        *,
        clock: Optional[Clock] = None,
        restricted_statuses: tuple[str, ...] = DEFAULT_RESTRICTED_STATUSES,
        enforce_eligibility: bool = True,
    ):
        self.store = store
        self.sequences = sequences
        self.students = students
        self.clock = clock or SystemClock()
        self.restricted_statuses = tuple(restricted_statuses)
        self.enforce_eligibility = enforce_eligibility

    # -------------------- reads --------------------

    async def get(self, run_id: str) -> AutomationRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise UnknownRun(f"follow-up {run_id} not found")
        return run

    async def list(self, filters: Optional[RunFilters] = None) -> List[AutomationRun]:
        return await self.store.list_runs(filters or RunFilters())

    async def list_for_student(self, student_id: str) -> List[AutomationRun]:
        return await self.store.list_runs(RunFilters(student_id=student_id))

    async def active_for_student(self, student_id: str) -> List[AutomationRun]:
        runs = await self.list_for_student(student_id)
        return [r for r in runs if r.is_active]

    # -------------------- activation --------------------

    async def activate(
        self,
        student_id: str,
        *,
        sequence_id: Optional[str] = None,
        backend_name: Optional[str] = None,
    ) -> Tuple[AutomationRun, bool]:
        """
        Create a run at step 0 and queue its first step at started_at + delay[0].
        When the pair already has an active run, that run is returned unchanged
        with created=False.
        """
        student = await self.students.get(student_id)
        if student is None:
            raise UnknownStudent(f"student {student_id} not found")
        seq = await self.sequences.resolve(sequence_id=sequence_id, backend_name=backend_name)
        if self.enforce_eligibility:
            check_eligibility(student, self.restricted_statuses)

        now = self.clock.now()
        run = AutomationRun(
            student_id=student.id,
            sequence_id=seq.id,
            sequence_version=seq.version,
            steps=list(seq.steps),
            started_at=now,
        )
        first = DueItem(run_id=run.id, step_index=0, due_at=add_minutes(now, seq.steps[0].delay_minutes))

        stored, created = await self.store.insert_run_if_no_active(run, first)
        if created:
            RUN_TRANSITIONS.labels(status="activated").inc()
            log.info(
                "🚀 Activated follow-up %s | student=%s sequence=%s v%d | first step due %s",
                stored.id, student.id, seq.backend_name, seq.version, first.due_at.isoformat(),
            )
        else:
            log.info("Active follow-up %s already exists for student=%s sequence=%s",
                     stored.id, student.id, seq.backend_name)
        return stored, created

    # -------------------- transitions --------------------

    async def _apply(self, run: AutomationRun, transition: Transition) -> AutomationRun:
        """Apply a transition to a run the caller holds the lock for."""
        for attempt in (1, 2):
            result = transition(run)
            if result is None:
                return run
            new_run, kwargs = result
            try:
                saved = await self.store.save_run(new_run, run.version, **kwargs)
            except ConcurrentModification:
                if attempt == 2:
                    raise
                log.warning("Version conflict on follow-up %s; reloading", run.id)
                run = await self.get(run.id)
                continue
            if saved.status != run.status:
                RUN_TRANSITIONS.labels(status=saved.status).inc()
            return saved
        raise ConcurrentModification(run.id)  # pragma: no cover

    async def _locked(self, run_id: str, transition: Transition) -> AutomationRun:
        async with self.store.run_lock(run_id):
            run = await self.get(run_id)
            return await self._apply(run, transition)

    def _advance_transition(self, *, sent_at: Optional[datetime], item: Optional[DueItem]) -> Transition:
        def transition(run: AutomationRun):
            if run.is_terminal:
                return None
            if item is not None and item.step_index != run.current_step_index:
                return None
            now = self.clock.now()
            next_index = run.current_step_index + 1
            changes: Dict[str, Any] = {
                "current_step_index": next_index,
                "status": "ongoing",
                "needs_attention": False,
                "last_error": None,
            }
            if sent_at is not None:
                changes["last_message_sent_at"] = sent_at
            kwargs: Dict[str, Any] = {}
            if item is not None:
                kwargs["due_updates"] = [item.model_copy(update={
                    "status": "done", "lease_expires_at": None, "last_error": None,
                })]
            if next_index >= run.total_steps:
                changes["status"] = "completed"
                changes["completed_at"] = now
                kwargs["cancel_pending"] = True
            else:
                if item is not None:
                    anchor = max(item.due_at, item.resumed_at) if item.resumed_at else item.due_at
                else:
                    anchor = sent_at or now
                kwargs["enqueue"] = DueItem(
                    run_id=run.id,
                    step_index=next_index,
                    due_at=add_minutes(anchor, run.steps[next_index].delay_minutes),
                )
            return run.model_copy(update=changes), kwargs
        return transition

    def _terminate_transition(self, status: str) -> Transition:
        def transition(run: AutomationRun):
            if run.is_terminal:
                return None
            changes = {"status": status, "completed_at": self.clock.now()}
            return run.model_copy(update=changes), {"cancel_pending": True}
        return transition

    async def advance_locked(
        self, run: AutomationRun, *, sent_at: Optional[datetime], item: Optional[DueItem] = None
    ) -> AutomationRun:
        """Dispatcher path: the caller already holds run_lock(run.id)."""
        saved = await self._apply(run, self._advance_transition(sent_at=sent_at, item=item))
        if saved.status == "completed" and run.status != "completed":
            log.info("🏁 Follow-up %s completed after %d step(s)", saved.id, saved.total_steps)
        return saved

    async def advance(self, run_id: str, *, sent_at: Optional[datetime] = None) -> AutomationRun:
        """Move a run past its current step without sending (staff skip)."""
        async with self.store.run_lock(run_id):
            run = await self.get(run_id)
            item = next(
                (i for i in await self.store.list_due_for_run(run_id)
                 if i.step_index == run.current_step_index and i.status in ("pending", "claimed", "failed")),
                None,
            )
            return await self.advance_locked(run, sent_at=sent_at, item=item)

    async def on_reply_detected(self, run_id: str) -> AutomationRun:
        run = await self._locked(run_id, self._terminate_transition("answer_received"))
        log.info("💬 Reply received → follow-up %s status=%s", run_id, run.status)
        return run

    async def stop(self, run_id: str) -> AutomationRun:
        """Manual stop. Idempotent: stopping a terminal run returns it unchanged."""
        run = await self._locked(run_id, self._terminate_transition("disabled"))
        log.info("🛑 Stop requested → follow-up %s status=%s", run_id, run.status)
        return run

    async def stop_all_for_student(self, student_id: str) -> List[AutomationRun]:
        stopped = []
        for run in await self.active_for_student(student_id):
            result = await self.stop(run.id)
            if result.status == "disabled":
                stopped.append(result)
        log.info("Stopped %d follow-up(s) for student %s", len(stopped), student_id)
        return stopped

    # -------------------- failure policy --------------------

    async def flag_failure_locked(self, run: AutomationRun, item: DueItem, error: str) -> AutomationRun:
        """
        Exhausted retries: the step is parked as failed and the run is flagged
        for staff. Status is untouched and no further step is queued until resume().
        """
        def transition(current: AutomationRun):
            if current.is_terminal:
                return None
            failed_item = item.model_copy(update={
                "status": "failed", "lease_expires_at": None, "last_error": error,
            })
            return (
                current.model_copy(update={"needs_attention": True, "last_error": error}),
                {"due_updates": [failed_item]},
            )
        return await self._apply(run, transition)

    async def resume(self, run_id: str) -> AutomationRun:
        """Staff resolution of a failed step: re-queue it due now."""
        async with self.store.run_lock(run_id):
            run = await self.get(run_id)
            if run.is_terminal or not run.needs_attention:
                return run
            now = self.clock.now()
            failed = [
                i for i in await self.store.list_due_for_run(run_id)
                if i.step_index == run.current_step_index and i.status == "failed"
            ]

            def transition(current: AutomationRun):
                if current.is_terminal:
                    return None
                kwargs: Dict[str, Any] = {}
                if failed:
                    kwargs["due_updates"] = [failed[0].model_copy(update={
                        "status": "pending", "due_at": now, "resumed_at": now,
                        "attempts": 0, "claimed_by": None, "lease_expires_at": None,
                    })]
                else:
                    kwargs["enqueue"] = DueItem(
                        run_id=current.id, step_index=current.current_step_index, due_at=now, resumed_at=now,
                    )
                return current.model_copy(update={"needs_attention": False}), kwargs

            saved = await self._apply(run, transition)
            log.info("Follow-up %s resumed at step %d", run_id, saved.current_step_index)
            return saved
