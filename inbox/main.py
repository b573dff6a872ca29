import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status

from inbox.config import settings
from inbox.storage import init_db, check_db_health
from inbox.logging_utils import setup_logging, RequestLoggingMiddleware
from inbox.metrics import get_metrics, get_metrics_content_type
from inbox.schemas import HealthResponse
from inbox import admin, webhooks, widget


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Inbox API",
    description="Omnichannel webhook ingestion with AI auto-replies",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(webhooks.router)
app.include_router(widget.router)
app.include_router(admin.router)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counters and latency, webhook delivery and event
    outcomes, AI reply outcomes, media relay results and handoff notifications.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
