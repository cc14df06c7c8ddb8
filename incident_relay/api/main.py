"""FastAPI surface for incident-relay.

Exposes the manual check trigger, a health check backed by the stored run
metrics, and Prometheus metrics. The state store is opened once at startup
and shared with the scheduler.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from incident_relay.config import get_settings
from incident_relay.engine.runs import run_check
from incident_relay.observability.metrics import APP_INFO
from incident_relay.scheduler import start_scheduler, stop_scheduler
from incident_relay.state.models import RunMetrics
from incident_relay.state.store import open_state_store

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CheckResult(BaseModel):
    """One incident's outcome in a manual check."""

    id: str
    name: str
    impact: str
    status: str
    storedStatus: str | None
    action: str


class CheckResponse(BaseModel):
    """Response body for GET /check."""

    message: str
    totalIncidents: int
    results: list[CheckResult]


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    version: str
    metrics: RunMetrics | None = None
    details: str | None = None


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the state store and start the scheduler; tear both down on shutdown."""
    settings = get_settings()
    logging.getLogger("incident_relay").setLevel(settings.log_level.upper())
    APP_INFO.info({"version": APP_VERSION, "status_api_url": settings.status_api_url})

    store = open_state_store()
    app.state.store = store
    logger.info("State store opened at %s", settings.state_db_path)

    start_scheduler(store)
    yield
    stop_scheduler()
    store.kv.close()
    logger.info("Shutting down incident-relay")


app = FastAPI(title="Status Page Incident Relay", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/check", response_model=CheckResponse)
async def check(request: Request) -> CheckResponse | JSONResponse:
    """Run a reconciliation pass now and report what happened to each incident."""
    try:
        report = await run_check(request.app.state.store, trigger="manual")
    except Exception as exc:
        logger.exception("Manual incident check failed")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process incidents", "details": str(exc)},
        )
    return CheckResponse.model_validate(report.to_response())


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse | JSONResponse:
    """Report service health along with the stored run metrics."""
    try:
        run_metrics = await request.app.state.store.get_metrics()
    except Exception as exc:
        logger.exception("Health check could not read the state store")
        body = HealthResponse(status="unhealthy", version=APP_VERSION, details=str(exc))
        return JSONResponse(status_code=503, content=body.model_dump())
    return HealthResponse(status="healthy", version=APP_VERSION, metrics=run_metrics)
