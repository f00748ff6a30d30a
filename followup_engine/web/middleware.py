# followup_engine/web/middleware.py
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from followup_engine.common import metrics as metrics_mod
from followup_engine.common.tracing import trace_scope


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuses an incoming X-Request-ID or mints one; it doubles as the log trace id."""

    async def dispatch(self, request: Request, call_next):
        with trace_scope(request.headers.get("X-Request-ID")) as request_id:
            request.state.request_id = request_id
            response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()

        # route template keeps label cardinality bounded (/touchpoints/{touchpoint_id})
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        metrics_mod.HTTP_TOTAL.labels(method=request.method, path=path).inc()
        metrics_mod.HTTP_LATENCY.observe(time.time() - start)

        status = response.status_code
        if 200 <= status < 300:
            metrics_mod.HTTP_2XX.inc()
        elif 400 <= status < 500:
            metrics_mod.HTTP_4XX.inc()

        return response


def setup_middleware(app: FastAPI):
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(MetricsMiddleware)
