# followup_engine/web/routes_followups.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from followup_engine.common.errors import DuplicateActiveRun
from followup_engine.domain.models import DispatchReport, RunFilters, RunStatus
from followup_engine.engine.service import FollowUpEngine
from followup_engine.web.deps import get_engine
from followup_engine.web.schemas import (
    ActivateRequest,
    EngagementSweepRequest,
    RunOut,
    StopStudentRequest,
    TouchpointOut,
)

router = APIRouter(prefix="/automated-follow-ups", tags=["automated-follow-ups"])
students_router = APIRouter(prefix="/students", tags=["automated-follow-ups"])


@router.post("", status_code=201, response_model=RunOut)
async def activate_follow_up(body: ActivateRequest, engine: FollowUpEngine = Depends(get_engine)):
    run, created = await engine.runs.activate(
        body.student_id,
        sequence_id=body.sequence_id,
        backend_name=body.sequence_backend_name,
    )
    if not created:
        raise DuplicateActiveRun(run)
    return RunOut.of(run)


@router.get("", response_model=List[RunOut])
async def list_follow_ups(
    student_id: Optional[str] = Query(None, alias="student"),
    sequence_id: Optional[str] = Query(None, alias="sequence"),
    status: Optional[RunStatus] = None,
    needs_attention: Optional[bool] = None,
    engine: FollowUpEngine = Depends(get_engine),
):
    filters = RunFilters(
        student_id=student_id,
        sequence_id=sequence_id,
        status=status,
        needs_attention=needs_attention,
    )
    return [RunOut.of(r) for r in await engine.runs.list(filters)]


@router.post("/dispatch", response_model=DispatchReport)
async def trigger_dispatch(engine: FollowUpEngine = Depends(get_engine)):
    """One dispatch pass, for deployments that drive the scheduler from cron."""
    return await engine.dispatcher.dispatch_due_steps()


@router.post("/check-recent-engagements")
async def check_recent_engagements(
    body: Optional[EngagementSweepRequest] = None,
    engine: FollowUpEngine = Depends(get_engine),
):
    hours_back = body.hours_back if body else 1
    halted = await engine.replies.sweep_recent(hours_back)
    return {"hours_back": hours_back, "halted": [RunOut.of(r) for r in halted]}


@router.post("/stop-student", response_model=List[RunOut])
async def stop_student(body: StopStudentRequest, engine: FollowUpEngine = Depends(get_engine)):
    return [RunOut.of(r) for r in await engine.runs.stop_all_for_student(body.student_id)]


@router.get("/{run_id}")
async def get_follow_up(run_id: str, engine: FollowUpEngine = Depends(get_engine)):
    run = await engine.runs.get(run_id)
    history = await engine.ledger.history_for_run(run_id)
    return {
        "run": RunOut.of(run),
        "touchpoints": [TouchpointOut.of(tp) for tp in history],
    }


@router.post("/{run_id}/stop", response_model=RunOut)
async def stop_follow_up(run_id: str, engine: FollowUpEngine = Depends(get_engine)):
    return RunOut.of(await engine.runs.stop(run_id))


@router.post("/{run_id}/resume", response_model=RunOut)
async def resume_follow_up(run_id: str, engine: FollowUpEngine = Depends(get_engine)):
    return RunOut.of(await engine.runs.resume(run_id))


@router.post("/{run_id}/advance", response_model=RunOut)
async def advance_follow_up(run_id: str, engine: FollowUpEngine = Depends(get_engine)):
    """Staff skip: move past the current step without sending it."""
    return RunOut.of(await engine.runs.advance(run_id))


@students_router.get("/{student_id}/automated-follow-ups", response_model=List[RunOut])
async def list_student_follow_ups(student_id: str, engine: FollowUpEngine = Depends(get_engine)):
    return [RunOut.of(r) for r in await engine.runs.list_for_student(student_id)]
