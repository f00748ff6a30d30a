# followup_engine/web/deps.py
from fastapi import Request

from followup_engine.engine.service import FollowUpEngine


async def get_engine(request: Request) -> FollowUpEngine:
    """The engine is put on app.state by create_app() or the lifespan hook."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Follow-up engine not initialized on app.state.engine")
    return engine
