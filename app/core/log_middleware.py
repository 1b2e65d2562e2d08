"""
Request context middleware.

Binds request_id / correlation_id for the lifetime of a request and emits
one ``request_completed`` line per request. Without an x-correlation-id
header the request id doubles as the correlation id.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.structured_logging import correlation_id_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or req_id
        tokens = (
            (request_id_var, request_id_var.set(req_id)),
            (correlation_id_var, correlation_id_var.set(corr_id)),
            (user_id_var, user_id_var.set(None)),
        )

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            user = getattr(request.state, "user", None)
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.route": _route_template(request),
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "user_id": getattr(user, "user_id", None),
                },
            )
            for var, token in tokens:
                var.reset(token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
