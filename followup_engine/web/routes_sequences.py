# followup_engine/web/routes_sequences.py
from typing import List

from fastapi import APIRouter, Depends

from followup_engine.domain.models import SequenceTemplate
from followup_engine.engine.service import FollowUpEngine
from followup_engine.web.deps import get_engine
from followup_engine.web.schemas import SequenceCreateRequest, SequenceUpdateRequest

router = APIRouter(prefix="/sequences", tags=["sequences"])


@router.get("", response_model=List[SequenceTemplate])
async def list_sequences(engine: FollowUpEngine = Depends(get_engine)):
    return await engine.sequences.list()


@router.post("", status_code=201, response_model=SequenceTemplate)
async def create_sequence(body: SequenceCreateRequest, engine: FollowUpEngine = Depends(get_engine)):
    return await engine.sequences.create(
        backend_name=body.backend_name,
        display_name=body.display_name,
        subject=body.subject,
        steps=body.steps,
    )


@router.get("/{sequence_id}", response_model=SequenceTemplate)
async def get_sequence(sequence_id: str, engine: FollowUpEngine = Depends(get_engine)):
    return await engine.sequences.get(sequence_id)


@router.put("/{sequence_id}", response_model=SequenceTemplate)
async def update_sequence(
    sequence_id: str, body: SequenceUpdateRequest, engine: FollowUpEngine = Depends(get_engine)
):
    return await engine.sequences.update(
        sequence_id,
        backend_name=body.backend_name,
        display_name=body.display_name,
        subject=body.subject,
        steps=body.steps,
    )
