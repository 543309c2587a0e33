"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core import otel
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import global_exception_handler, request_id_middleware, setup_cors_middleware
from app.db.session import engine, init_db

# Import routers
from app.api import admin, billing, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = otel.initialize_otel()
    if otel_initialized:
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        otel.instrument_httpx()
        otel.instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    background_tasks = []
    if settings.BACKGROUND_TASKS_ENABLED:
        from app.tasks.retention import retention_task
        from app.tasks.dunning import dunning_task

        logger.info("Starting retention and dunning tasks...")
        background_tasks.append(asyncio.create_task(retention_task()))
        background_tasks.append(asyncio.create_task(dunning_task()))
        logger.info("Background tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()
    for task in background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


# Create FastAPI app
app = FastAPI(
    title="Project Sites Billing",
    description="Stripe webhook ingestion and subscription reconciliation",
    version="0.1.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry (middleware must be added before startup)
if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    otel.instrument_fastapi(app)

setup_cors_middleware(app)
app.middleware("http")(request_id_middleware)
app.add_exception_handler(Exception, global_exception_handler)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(admin.router)


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
