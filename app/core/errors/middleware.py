"""
FastAPI exception handler for KlyaError.

Body shape: ``{"error": {code, title, message, retryable,
user_action_required, remediation, details?}}``. ``message`` is always the
registry's safe message; the exception's internal ``detail`` only reaches
the logs. Rate-limit errors also carry a Retry-After header.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import KlyaError
from app.core.errors.registry import error_registry

logger = logging.getLogger(__name__)

_UNREGISTERED_BODY = {
    "title": "Internal error",
    "message": "An unexpected error occurred.",
    "retryable": False,
    "user_action_required": False,
    "remediation": [],
}


async def klya_error_handler(request: Request, exc: KlyaError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("unregistered_error_code", extra={"error.code": exc.code, "error.message": exc.detail})
        return JSONResponse(status_code=500, content={"error": {"code": exc.code, **_UNREGISTERED_BODY}})

    logger.log(
        entry.log_level,
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.message": exc.detail,
            "http.method": request.method,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    body = {
        "code": entry.code,
        "title": entry.title,
        "message": entry.safe_message,
        "retryable": entry.retryable,
        "user_action_required": entry.user_action_required,
        "remediation": entry.remediation,
    }
    if exc.public:
        body["details"] = exc.public

    headers = None
    retry_after = exc.public.get("retry_after_seconds")
    if retry_after is not None:
        headers = {"Retry-After": str(int(retry_after))}

    return JSONResponse(status_code=entry.http_status, content={"error": body}, headers=headers)
