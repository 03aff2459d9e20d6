"""Main FastAPI application"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mailcast.api import campaigns
from mailcast.container import build_container
from mailcast.core.config import settings
from mailcast.core.errors import CampaignError
from mailcast.core.logging import setup_logging
from mailcast.core.otel import initialize_otel, instrument_app
from mailcast.db.session import SessionLocal, engine, init_db

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup; tests install their own container before entering the lifespan
    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container(settings, engine, SessionLocal)
        app.state.container = container

    logger.info("Initializing database...")
    try:
        init_db(container.engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    scheduler_task = None
    if container.settings.SCHEDULER_ENABLED:
        logger.info("Starting scheduler task...")
        scheduler_task = asyncio.create_task(container.scheduler.scheduler_task())
        logger.info("Scheduler task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Scheduler task stopped")


# Create FastAPI app
app = FastAPI(
    title="Mailcast Backend",
    description="Bulk email campaign dispatch and tracking",
    version="1.0.0",
    lifespan=lifespan
)

if initialize_otel():
    instrument_app(app, engine)
    logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
else:
    logger.info("OpenTelemetry not configured - running without distributed tracing")

app.include_router(campaigns.router)


@app.exception_handler(CampaignError)
async def campaign_error_handler(request: Request, exc: CampaignError):
    """Known campaign errors carry their own HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
