"""
MsgRelay - Outbound message dispatch service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Import observability modules
from msgrelay.config import settings
from msgrelay.database import AsyncSessionLocal
from msgrelay.logging_config import get_logger
from msgrelay.sentry_config import configure_sentry
from msgrelay.middleware.logging import LoggingMiddleware
from msgrelay.routes.metrics import router as metrics_router

# Import route modules
from msgrelay.routes.messages import router as messages_router
from msgrelay.routes.webhooks import router as webhooks_router
from msgrelay.services.message_queue import get_message_queue
from msgrelay.services.webhook_service import get_notifier

log = get_logger(component="app")

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app_started", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    yield
    await get_message_queue().close()
    await get_notifier().stop()
    log.info("app_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-platform outbound message dispatch with signed webhook notifications",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(messages_router)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        log.error("health_database_failed", error=str(e))
        database = "unavailable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database
    }
