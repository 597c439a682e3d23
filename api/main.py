"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, events, preview, dlq
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from gateway.scheduler import GatewayScheduler

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Integration Gateway API",
    description="Event-to-webhook delivery gateway: push ingest, rule previews and dead-letter operations",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)
app.state.scheduler = None


# Include routers
app.include_router(health.router)
app.include_router(events.router)
app.include_router(preview.router)
app.include_router(dlq.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Integration Gateway API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler = GatewayScheduler()
        scheduler.start()
        app.state.scheduler = scheduler
    else:
        logger.info("Background jobs disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Integration Gateway API")
    if app.state.scheduler is not None:
        await app.state.scheduler.stop()
        app.state.scheduler = None


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Integration Gateway API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "events": "/events/{org_id}",
            "preview": "/preview",
            "dlq": "/dlq"
        }
    }
