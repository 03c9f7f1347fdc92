"""
Bakery Orders - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bakery_orders.core.config import settings
from bakery_orders.core.logging import setup_logging, get_logger
from bakery_orders.core.middleware import setup_middleware, setup_exception_handlers
from bakery_orders.api.routes import router as api_router
from bakery_orders.db.database import engine, Base
from bakery_orders.db import models  # noqa: F401  registers tables on Base.metadata

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Orders", "description": "Cake and pizza checkout, M-Pesa prompts and payment status."},
    {"name": "Webhooks", "description": "Safaricom STK/C2B callbacks and the payment gateway webhook."},
    {"name": "Staff", "description": "Kitchen, delivery and admin order actions."},
    {"name": "Cron", "description": "Scheduler entry points: reconciliation and STK expiry."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Order intake and M-Pesa payment reconciliation for the bakery storefront.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

if settings.DEBUG:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info(
        "Starting application",
        extra_data={"app_name": settings.APP_NAME, "environment": settings.ENVIRONMENT},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from bakery_orders.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "environment": settings.ENVIRONMENT}
