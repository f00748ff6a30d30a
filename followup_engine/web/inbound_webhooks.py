# followup_engine/web/inbound_webhooks.py
import json
import logging
from typing import Any, Callable, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from followup_engine.common.metrics import IDEMPOTENT_HITS, WEBHOOK_INBOUND
from followup_engine.domain.models import Touchpoint
from followup_engine.engine.service import FollowUpEngine
from followup_engine.web.deps import get_engine
from followup_engine.web.schemas import (
    InboundMessage,
    normalize_generic,
    normalize_gmail,
    normalize_openphone,
    normalize_whatsapp,
)
from followup_engine.web.security import require_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("followups.webhooks")

Normalizer = Callable[[Dict[str, Any]], List[InboundMessage]]

# provider path -> (touchpoint source, normalizer)
PROVIDERS: Dict[str, tuple] = {
    "openphone": ("openphone", normalize_openphone),
    "gmail": ("gmail", normalize_gmail),
    "whatsapp": ("whatsapp_business", normalize_whatsapp),
    "generic": ("webhook", normalize_generic),
}


def _parse(body: bytes, normalizer: Normalizer) -> List[InboundMessage]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=422, detail="Expected a JSON object")
    try:
        return normalizer(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))
    except (KeyError, TypeError, AttributeError) as e:
        raise HTTPException(status_code=422, detail=f"Malformed provider payload: {e}")


async def _ingest(request: Request, engine: FollowUpEngine, provider: str, msg: InboundMessage) -> Dict[str, Any]:
    source, _ = PROVIDERS[provider]
    cache = request.app.state.idempotency
    key = f"{provider}:{msg.external_id}"

    # Step 1: cheap dedup for redelivery bursts
    if not await cache.reserve(key):
        IDEMPOTENT_HITS.inc()
        WEBHOOK_INBOUND.labels(provider=provider, outcome="duplicate").inc()
        logger.info("Duplicate %s webhook ignored | external_id=%s", provider, msg.external_id)
        return {"status": "duplicate", "external_id": msg.external_id}

    try:
        # Step 2: resolve the student
        if msg.student_id:
            student = await engine.students.get(msg.student_id)
        else:
            student = await engine.students.resolve_contact(msg.channel, msg.contact_ref or "")
        if student is None:
            WEBHOOK_INBOUND.labels(provider=provider, outcome="unknown_contact").inc()
            logger.info("No student for %s contact %s; event %s ignored",
                        msg.channel, msg.student_id or msg.contact_ref, msg.external_id)
            return {"status": "ignored", "reason": "unknown_contact", "external_id": msg.external_id}

        # Step 3: append to the ledger; reply detection runs as a ledger listener
        tp, created = await engine.ledger.record(Touchpoint(
            student_id=student.id,
            channel=msg.channel,
            direction=msg.direction,
            source=source,
            message=msg.content,
            occurred_at=msg.occurred_at,
            external_id=msg.external_id,
            external_metadata={"provider": provider, **msg.metadata},
        ))
    except Exception:
        await cache.release(key)
        raise

    if not created:
        IDEMPOTENT_HITS.inc()
        WEBHOOK_INBOUND.labels(provider=provider, outcome="duplicate").inc()
        return {"status": "duplicate", "external_id": msg.external_id, "touchpoint_id": tp.id}

    WEBHOOK_INBOUND.labels(provider=provider, outcome="recorded").inc()
    return {"status": "received", "external_id": msg.external_id, "touchpoint_id": tp.id}


async def _handle(provider: str, request: Request, body: bytes, engine: FollowUpEngine) -> Dict[str, Any]:
    _, normalizer = PROVIDERS[provider]
    messages = _parse(body, normalizer)
    results = [await _ingest(request, engine, provider, m) for m in messages]

    if not results:
        return {"status": "ignored", "reason": "no_messages", "results": []}
    if len(results) == 1:
        return results[0]
    statuses = {r["status"] for r in results}
    overall = "received" if "received" in statuses else statuses.pop() if len(statuses) == 1 else "ignored"
    return {"status": overall, "results": results}


@router.post("/openphone")
async def openphone_webhook(request: Request, body: bytes = Depends(require_signature),
                            engine: FollowUpEngine = Depends(get_engine)):
    return await _handle("openphone", request, body, engine)


@router.post("/gmail")
async def gmail_webhook(request: Request, body: bytes = Depends(require_signature),
                        engine: FollowUpEngine = Depends(get_engine)):
    return await _handle("gmail", request, body, engine)


@router.post("/whatsapp")
async def whatsapp_webhook(request: Request, body: bytes = Depends(require_signature),
                           engine: FollowUpEngine = Depends(get_engine)):
    return await _handle("whatsapp", request, body, engine)


@router.post("/generic")
async def generic_webhook(request: Request, body: bytes = Depends(require_signature),
                          engine: FollowUpEngine = Depends(get_engine)):
    return await _handle("generic", request, body, engine)
