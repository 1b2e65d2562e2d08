"""
Health check endpoints.

- GET /health       — cheap: process alive, version, uptime
- GET /health/deep  — database round-trip + payment provider configuration
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.config import settings
from app.core.database import ping
from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Cheap health check, no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(_user: AuthenticatedUser = Depends(get_current_user)):
    """Database latency and enabled payment rails."""
    components = {"database": _check_database()}
    components["payments"] = {
        "status": "ok",
        "environment": settings.payment_environment,
        "methods": list(settings.payment_methods_enabled),
    }

    overall = "ok" if all(c["status"] == "ok" for c in components.values()) else "down"
    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


def _check_database() -> dict:
    try:
        return {"status": "ok", "latency_ms": ping()}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": "database", "error": str(e)})
        return {"status": "down", "detail_safe": f"Query failed: {type(e).__name__}"}
