"""
GlassOps - Service request fulfillment pipeline

FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

# Import observability modules
from glassops.config import settings
from glassops.database import engine
from glassops.exceptions import GlassOpsError
from glassops.logging_config import configure_logging, get_logger
from glassops.sentry_config import configure_sentry
from glassops.middleware.logging import LoggingMiddleware
from glassops.routes.metrics import router as metrics_router

# Import route modules
from glassops.routes.intake import router as intake_router
from glassops.routes.transactions import router as transactions_router
from glassops.routes.retry_queue import router as retry_queue_router
from glassops.routes.job_requests import router as job_requests_router
from glassops.routes.subcontractors import router as subcontractors_router
from glassops.routes.notifications import router as notifications_router
from glassops.services.broadcaster import RedisNotificationBridge, broadcaster
from glassops.services.rate_limiter import rate_limiter

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Relay notifications published by workers to this process's observers."""
    bridge = RedisNotificationBridge()
    relay = asyncio.create_task(bridge.relay(broadcaster))
    log.info("app_started", environment=settings.ENVIRONMENT)
    try:
        yield
    finally:
        relay.cancel()
        try:
            await relay
        except asyncio.CancelledError:
            pass
        await bridge.close()
        await rate_limiter.close()
        log.info("app_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Service request intake, external job creation and subcontractor dispatch",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Add CORS middleware for the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GlassOpsError)
async def glassops_error_handler(request: Request, exc: GlassOpsError):
    """Render application errors as {"success": false, "error": {...}}."""
    if exc.status_code >= 500:
        log.error("request_error", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include webhook routes
app.include_router(intake_router)

# Include pipeline routes
app.include_router(transactions_router)
app.include_router(retry_queue_router)

# Include dispatch routes
app.include_router(job_requests_router)
app.include_router(subcontractors_router)

# Include notification routes
app.include_router(notifications_router)


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
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as exc:
        log.warning("health_database_unreachable", error=str(exc))
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "observers": broadcaster.observer_count,
    }
