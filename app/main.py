from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import asyncio

from app.config import settings
from app.routers import content, health, payments, subscription, usage
from app.core.database import init_db, close_db
from app.core.structured_logging import setup_logging
from app.core.errors import KlyaError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import klya_error_handler
from app.core.log_middleware import CorrelationMiddleware
from app.services.content_provider import close_content_generator
from app.services.expiration_sweeper import sweeper_loop
from app.services.payments import payment_gateway

# Initialize structured logging before any logger calls
setup_logging()

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "KLYA Entitlements API"
API_VERSION = "0.4.0"

API_DESCRIPTION = """
## KLYA Entitlements

Subscription plans, metered usage limits, and payment confirmation for
KLYA content features.

### Authentication

User endpoints require an API key.
Include in requests: `X-API-Key: kl_your_key_here`

Payment webhooks are public and authenticated by provider signature.
"""

# Tag metadata for organizing endpoints
TAGS_METADATA = [
    {
        "name": "health",
        "description": "Health check endpoints for monitoring. No authentication required.",
    },
    {
        "name": "subscription",
        "description": "Current subscription, plan catalog, upgrades and cancellation. **Requires API Key** (except the plan catalog).",
    },
    {
        "name": "usage",
        "description": "Usage limits for the current billing period and usage statistics. **Requires API Key.**",
    },
    {
        "name": "content",
        "description": "Entitlement-gated content generation. **Requires API Key.**",
    },
    {
        "name": "payments",
        "description": "Provider webhooks (public, signature verified) and client-initiated payment verification.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting %s v%s (%s payments)...", API_TITLE, API_VERSION, settings.payment_environment)

    error_registry.load()

    # Missing provider secrets are fatal here, never per request
    settings.validate_payment_config()

    init_db()  # Alembic upgrade head
    logger.info("Database initialized")

    sweeper_task = asyncio.create_task(sweeper_loop())

    yield

    # Shutdown
    logger.info("Shutting down %s...", API_TITLE)

    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        logger.info("Expiration sweeper cancelled")

    await payment_gateway.aclose()
    await close_content_generator()
    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log line
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(KlyaError, klya_error_handler)

    # Anything unexpected still gets the KLY-SYS-001 error body
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return await klya_error_handler(request, KlyaError(detail=f"{type(exc).__name__}: {exc}"))

    app.include_router(health.router, tags=["health"])
    app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["subscription"])
    app.include_router(usage.router, prefix="/api/v1/usage", tags=["usage"])
    app.include_router(content.router, prefix="/api/v1/content", tags=["content"])
    app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "status": "running",
            "docs": {
                "swagger": "/docs",
                "redoc": "/redoc",
                "openapi": "/openapi.json",
            },
        }

    return app


# Create the app instance
app = create_app()
