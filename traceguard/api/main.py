"""FastAPI backend for TraceGuard.

Hosts the per-alert evaluation scheduler and exposes manual control of alert
loops, on-demand root-cause investigations and read access to their results.
The database connection and loop dependencies are built once at startup and
shared across requests.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from traceguard.alerting.evaluator import read_metric
from traceguard.alerting.loop import (
    AlertLoopDeps,
    CycleOutcome,
    CycleStatus,
    InvestigationResult,
    run_evaluation_cycle,
    run_investigation,
)
from traceguard.alerting.models import Alert
from traceguard.alerting.scheduler import get_scheduler, start_scheduler, stop_evaluation, stop_scheduler
from traceguard.config import get_settings
from traceguard.errors import TransientDependencyError
from traceguard.observability.metrics import APP_INFO, COMPONENT_HEALTHY, REQUEST_DURATION, REQUESTS_TOTAL
from traceguard.rca.models import CodeCorrelationOutput, TraceAnalysisOutput
from traceguard.storage.store import get_alert, get_initialized_connection, get_investigations

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class StopResponse(BaseModel):
    """Response body for POST /alerts/{alert_id}/stop."""

    alert_id: str
    stopped: bool


class InvestigationRequest(BaseModel):
    """Request body for POST /investigations.

    The window defaults to the alert's own trailing window ending now.
    """

    alert_id: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    lookback_days: int | None = Field(default=None, gt=0, le=90)


class StoredInvestigation(BaseModel):
    """One saved investigation, as returned by GET /alerts/{alert_id}/investigations."""

    id: int
    alert_id: str
    created_at: str
    window_start: str
    window_end: str
    trace_analysis: TraceAnalysisOutput
    code_correlation: CodeCorrelationOutput | None


class ComponentHealth(BaseModel):
    """Health status of a single dependency."""

    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    scheduled_alerts: int
    components: list[ComponentHealth]


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database and start alert loops at startup, tear down on shutdown."""
    APP_INFO.info({"version": "0.1.0"})

    try:
        conn = get_initialized_connection()
    except Exception:
        logger.exception("Failed to open database at startup")
        raise

    deps = AlertLoopDeps.from_connection(conn)
    app.state.conn = conn
    app.state.deps = deps

    start_scheduler(conn, deps)
    yield
    stop_scheduler()
    conn.close()
    logger.info("Shutting down TraceGuard")


app = FastAPI(title="TraceGuard", lifespan=lifespan)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt


def _record_request(endpoint: str, status: str, start: float) -> None:
    REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()
    REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/alerts/{alert_id}/evaluate", response_model=CycleOutcome)
async def evaluate(alert_id: str, request: Request) -> CycleOutcome:
    """Run one evaluation cycle for an alert right now."""
    start = time.monotonic()
    try:
        outcome = await run_evaluation_cycle(alert_id, request.app.state.deps)
    except Exception as exc:
        _record_request("/alerts/evaluate", "error", start)
        logger.exception("Manual evaluation failed for alert %s", alert_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if outcome.status is CycleStatus.NOT_FOUND:
        _record_request("/alerts/evaluate", "not_found", start)
        raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")

    _record_request("/alerts/evaluate", "success", start)
    return outcome


@app.post("/alerts/{alert_id}/stop", response_model=StopResponse)
async def stop(alert_id: str) -> StopResponse:
    """Stop the evaluation loop of an alert."""
    stopped = stop_evaluation(alert_id)
    REQUESTS_TOTAL.labels(endpoint="/alerts/stop", status="success").inc()
    return StopResponse(alert_id=alert_id, stopped=stopped)


@app.post("/investigations", response_model=InvestigationResult)
async def investigate(body: InvestigationRequest, request: Request) -> InvestigationResult:
    """Run trace analysis and code correlation for an alert window on demand."""
    start = time.monotonic()
    deps: AlertLoopDeps = request.app.state.deps

    record = await asyncio.to_thread(get_alert, deps.conn, body.alert_id)
    if record is None:
        _record_request("/investigations", "not_found", start)
        raise HTTPException(status_code=404, detail=f"Alert not found: {body.alert_id}")

    alert = Alert.from_record(record)
    window_end = _as_utc(body.window_end) if body.window_end else datetime.now(UTC)
    window_start = _as_utc(body.window_start) if body.window_start else window_end - timedelta(minutes=alert.window_mins)
    if window_start >= window_end:
        _record_request("/investigations", "invalid", start)
        raise HTTPException(status_code=422, detail="window_start must be before window_end")

    try:
        metric = await read_metric(alert, deps.metric_source, window_end)
        result = await run_investigation(
            alert,
            deps,
            window_start=window_start,
            window_end=window_end,
            alert_value=metric.value,
            trigger="manual",
            lookback_days=body.lookback_days,
        )
    except TransientDependencyError as exc:
        _record_request("/investigations", "unavailable", start)
        logger.warning("Investigation for alert %s failed: %s", body.alert_id, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        _record_request("/investigations", "error", start)
        logger.exception("Investigation for alert %s failed", body.alert_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    _record_request("/investigations", "success", start)
    return result


@app.get("/alerts/{alert_id}/investigations", response_model=list[StoredInvestigation])
async def list_investigations(alert_id: str, request: Request, limit: int = 10) -> list[StoredInvestigation]:
    """Most recent investigations for an alert, newest first."""
    conn = request.app.state.conn
    records = await asyncio.to_thread(get_investigations, conn, alert_id, limit)
    REQUESTS_TOTAL.labels(endpoint="/alerts/investigations", status="success").inc()
    return [
        StoredInvestigation(
            id=r["id"],
            alert_id=r["alert_id"],
            created_at=r["created_at"],
            window_start=r["window_start"],
            window_end=r["window_end"],
            trace_analysis=TraceAnalysisOutput.model_validate_json(r["trace_analysis"]),
            code_correlation=(
                CodeCorrelationOutput.model_validate_json(r["code_correlation"]) if r["code_correlation"] else None
            ),
        )
        for r in records
    ]


async def _check_service(name: str, url: str) -> ComponentHealth:
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(f"{url}/health")
            if resp.status_code == 200:
                return ComponentHealth(name=name, status="healthy")
            return ComponentHealth(name=name, status="unhealthy", detail=f"HTTP {resp.status_code}")
    except Exception as exc:
        return ComponentHealth(name=name, status="unhealthy", detail=str(exc))


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Check health of the database, the scheduler and configured external services."""
    settings = get_settings()
    components: list[ComponentHealth] = []

    # --- Database ---
    try:
        await asyncio.to_thread(request.app.state.conn.execute, "SELECT 1")
        components.append(ComponentHealth(name="database", status="healthy"))
    except Exception as exc:
        components.append(ComponentHealth(name="database", status="unhealthy", detail=str(exc)))

    # --- Notification service (optional) ---
    if settings.notification_url:
        components.append(await _check_service("notifications", settings.notification_url))

    # --- Code search service (optional) ---
    if settings.code_search_url:
        components.append(await _check_service("code_search", settings.code_search_url))

    # --- Update Prometheus gauges ---
    for comp in components:
        COMPONENT_HEALTHY.labels(component=comp.name).set(1.0 if comp.status == "healthy" else 0.0)

    # --- Overall status ---
    healthy_count = sum(1 for c in components if c.status == "healthy")
    if healthy_count == len(components):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"

    scheduler = get_scheduler()
    scheduled = len(scheduler.scheduler.get_jobs()) if scheduler is not None else 0
    return HealthResponse(status=overall, scheduled_alerts=scheduled, components=components)
