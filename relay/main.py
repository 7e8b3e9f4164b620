"""
Relay - Main FastAPI Application
"""
from fastapi import FastAPI

from relay.core.config import settings
from relay.core.logging import setup_logging, get_logger
from relay.core.middleware import setup_middleware, setup_exception_handlers
from relay.api.routes import router as api_router
from relay.db.database import engine, Base
import relay.db.models  # noqa: F401  registers tables on Base.metadata

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Webhook Endpoints",
        "description": "Register outbound HTTPS endpoints, manage subscriptions and signing secrets.",
    },
    {"name": "Events", "description": "Publish business events for webhook delivery."},
    {"name": "Webhooks", "description": "Inbound webhooks from third-party providers."},
    {
        "name": "Admin",
        "description": "Operator tools: delivery queue inspection, cancellation, inbound event retry.",
    },
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Idempotency-key gate for mutating requests, and an at-least-once, "
        "signed and deduplicated webhook delivery pipeline."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, idempotency gate)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info(
        "Starting application",
        extra_data={
            "app_name": settings.APP_NAME,
            "incoming_sources": sorted(settings.INCOMING_WEBHOOK_SOURCES),
        }
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="Lightweight check that the process is up. Does not touch the database or the broker.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe"""
    return {"status": "healthy"}
