# followup_engine/web/metrics.py
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@router.get("/readyz")
async def readiness_check(request: Request):
    """Ready once the engine is wired and its store answers."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    await engine.store.list_sequences()
    return {"status": "ready", "store": type(engine.store).__name__}
