"""HTTP middleware for request correlation and per-request telemetry.

``RequestIdMiddleware`` runs outermost: it binds the request id (reused from a
well-formed ``X-Request-ID`` header, otherwise generated) to ``request_id_ctx``
and echoes it back. ``RequestTelemetryMiddleware`` records the Prometheus
HTTP metrics and writes one structured log line per request.

Metric labels use the matched route template (``/api/v1/toolboxes/{toolbox_id}``)
so toolbox and instance ids never become label values. Requests that never
reach a route (auth rejections, 404s) are labelled ``unmatched``.
"""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import get_logger, request_id_ctx
from .metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_FLIGHT,
    HTTP_REQUESTS_TOTAL,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
UNMATCHED_ROUTE = "unmatched"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,128}$")


def route_label(request: Request) -> str:
    """Return the template of the route that served ``request``."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) and template else UNMATCHED_ROUTE


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        supplied = request.headers.get(REQUEST_ID_HEADER, "")
        rid = supplied if _REQUEST_ID_RE.match(supplied) else uuid.uuid4().hex
        request.state.request_id = rid

        ctx_token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(ctx_token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    """Count, time and log every request against its route template."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        started = time.perf_counter()
        status = 500
        HTTP_REQUESTS_IN_FLIGHT.inc()
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            HTTP_REQUESTS_IN_FLIGHT.dec()
            elapsed = time.perf_counter() - started
            route = route_label(request)
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method, path=route, status=str(status),
            ).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=request.method, path=route,
            ).observe(elapsed)

            identity = getattr(request.state, "auth_identity", None)
            logger.info(
                "request_completed",
                method=request.method,
                route=route,
                status=status,
                duration_ms=round(elapsed * 1000, 2),
                user_id=identity.user_id if identity is not None else None,
            )
