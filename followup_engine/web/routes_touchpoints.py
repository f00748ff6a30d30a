# followup_engine/web/routes_touchpoints.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from followup_engine.common.errors import UnknownStudent
from followup_engine.domain.models import Channel, Direction, Source, Touchpoint, TouchpointFilters
from followup_engine.engine.ledger import MAX_PAGE_SIZE
from followup_engine.engine.service import FollowUpEngine
from followup_engine.web.deps import get_engine
from followup_engine.web.schemas import TouchpointCreateRequest, TouchpointOut, TouchpointPatchRequest
from followup_engine.web.security import require_admin

router = APIRouter(prefix="/touchpoints", tags=["touchpoints"])


@router.get("")
async def list_touchpoints(
    student_id: Optional[str] = Query(None, alias="student"),
    channel: Optional[Channel] = None,
    direction: Optional[Direction] = Query(None, alias="type"),
    source: Optional[Source] = None,
    run_id: Optional[str] = Query(None, alias="run"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    engine: FollowUpEngine = Depends(get_engine),
):
    filters = TouchpointFilters(
        student_id=student_id,
        channel=channel,
        direction=direction,
        source=source,
        automated_follow_up_id=run_id,
        since=since,
        until=until,
    )
    result = await engine.ledger.list(filters, page=page, page_size=page_size)
    return {
        "items": [TouchpointOut.of(tp) for tp in result.items],
        "page": result.page,
        "page_size": result.page_size,
        "total": result.total,
        "has_more": result.has_more,
    }


@router.post("", status_code=201, response_model=TouchpointOut)
async def log_touchpoint(body: TouchpointCreateRequest, engine: FollowUpEngine = Depends(get_engine)):
    """Manual staff entry; an inbound entry counts as a reply like any webhook."""
    if await engine.students.get(body.student_id) is None:
        raise UnknownStudent(f"student {body.student_id} not found")
    tp, _ = await engine.ledger.record(Touchpoint(
        student_id=body.student_id,
        channel=body.channel,
        direction=body.type,
        source="manual",
        message=body.message,
        occurred_at=body.occurred_at or engine.clock.now(),
        automated_follow_up_id=body.automated_follow_up_id,
    ))
    return TouchpointOut.of(tp)


@router.get("/{touchpoint_id}", response_model=TouchpointOut)
async def get_touchpoint(touchpoint_id: str, engine: FollowUpEngine = Depends(get_engine)):
    return TouchpointOut.of(await engine.ledger.get(touchpoint_id))


@router.patch("/{touchpoint_id}", response_model=TouchpointOut)
async def correct_touchpoint(
    touchpoint_id: str, body: TouchpointPatchRequest, engine: FollowUpEngine = Depends(get_engine)
):
    tp = await engine.ledger.correct(touchpoint_id, message=body.message, occurred_at=body.occurred_at)
    return TouchpointOut.of(tp)


@router.delete("/{touchpoint_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_touchpoint(touchpoint_id: str, engine: FollowUpEngine = Depends(get_engine)):
    await engine.ledger.delete(touchpoint_id)
    return Response(status_code=204)
